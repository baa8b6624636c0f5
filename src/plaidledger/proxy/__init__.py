"""Demo-key-guarded HTTP proxy in front of Plaid."""

from plaidledger.proxy.app import create_app
from plaidledger.proxy.cache import ProxyCache
from plaidledger.proxy.service import ProxyService

__all__ = ["ProxyCache", "ProxyService", "create_app"]
