"""Legacy Vault Meta information.
   Legacy Vault escrows content keys behind a confidential smart contract
   so that heirs can recover them after a release time.
"""
__title__ = 'legacy_vault'
__description__ = (
   'Time-locked confidential vault: client-side encryption, homomorphic '
   'key escrow and an event-sourced read-model.'
)
__version__ = '0.3.0'
__copyright__ = 'Copyright (c) 2025 Legacy Vault Contributors'
__author__ = 'Legacy Vault Contributors'
__author_email__ = 'dev@legacyvault.io'
__license__ = 'Apache-2.0'
__url__ = 'https://github.com/legacy-vault/legacy-vault'
