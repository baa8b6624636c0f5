from __future__ import annotations

from plaidledger.proxy.cache import ProxyCache


def test_access_tokens_by_item() -> None:
    cache = ProxyCache()

    cache.set_access_token("item-1", "access-1")
    cache.set_access_token("item-1", "access-2")

    assert cache.get_access_token("item-1") == "access-2"
    assert cache.get_access_token("item-2") is None


def test_transactions_by_access_token() -> None:
    cache = ProxyCache()
    body = {"transactions": [], "total_transactions": 0}

    cache.set_transactions("access-1", body)

    assert cache.get_transactions("access-1") == body
    assert cache.get_transactions("access-2") is None


def test_instances_do_not_share_state() -> None:
    first, second = ProxyCache(), ProxyCache()

    first.set_access_token("item-1", "access-1")

    assert second.get_access_token("item-1") is None
