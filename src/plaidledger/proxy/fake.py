"""Synthetic Plaid responses for FAKE_PLAID deployments (no upstream calls)."""

from __future__ import annotations

from datetime import date, timedelta
import random
import string
from typing import Any


def _suffix(rng: random.Random, length: int = 8) -> str:
    alphabet = string.ascii_lowercase + string.digits
    return "".join(rng.choice(alphabet) for _ in range(length))


def fake_public_token(rng: random.Random) -> dict[str, str]:
    return {
        "public_token": f"public-fake-{_suffix(rng)}",
        "request_id": f"req-{_suffix(rng, 6)}",
    }


def fake_exchange(rng: random.Random) -> dict[str, str]:
    return {
        "access_token": f"access-fake-{_suffix(rng)}",
        "item_id": f"item-fake-{_suffix(rng, 6)}",
        "request_id": f"req-{_suffix(rng, 6)}",
    }


def fake_transactions(
    access_token: str, *, today: date, rng: random.Random
) -> dict[str, Any]:
    """A /transactions/get-shaped body with two expenses and one salary."""

    def txn(name: str, merchant: str, amount: float, days_ago: int) -> dict[str, Any]:
        return {
            "account_id": "acct_plaid_1",
            "amount": amount,
            "date": (today - timedelta(days=days_ago)).isoformat(),
            "name": name,
            "merchant_name": merchant,
            "transaction_id": f"tx_{_suffix(rng)}",
            "iso_currency_code": "USD",
        }

    transactions = [
        txn("Demo Coffee", "Demo Coffee", 4.5, 2),
        txn("Demo Groceries", "Demo Market", 32.75, 5),
        txn("Demo Salary", "Employer Inc", -1500.00, 20),
    ]
    return {
        "accounts": [
            {
                "account_id": "acct_plaid_1",
                "balances": {},
                "mask": "0000",
                "name": "Plaid Checking",
                "official_name": "Plaid Gold Standard Checking",
                "subtype": "checking",
                "type": "depository",
            }
        ],
        "item": {"item_id": f"item_{access_token[:8] or 'demo'}"},
        "request_id": f"req_{_suffix(rng, 6)}",
        "total_transactions": len(transactions),
        "transactions": transactions,
    }
