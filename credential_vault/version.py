"""Credential Vault Meta information.
   Credential Vault encrypts, stores, rotates and migrates third-party API keys.
"""
__title__ = 'credential_vault'
__description__ = (
   'Credential Vault encrypts, stores, rotates and migrates '
   'third-party API keys at rest.'
)
__version__ = '0.3.0'
__copyright__ = 'Copyright (c) 2023 Jesus Lara'
__author__ = 'Jesus Lara'
__author_email__ = 'jesuslarag@gmail.com'
__license__ = 'Apache-2.0'
