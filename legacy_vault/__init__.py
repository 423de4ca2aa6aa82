"""Legacy Vault — time-locked confidential vaults with heir recovery."""
from .version import __version__

__all__ = ["__version__"]
