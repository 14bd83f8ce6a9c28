"""Builders for raw documents and rows used across the test suite."""

from __future__ import annotations


def seed_agent(store, agent_id: str = "ag1", code: str = "AG01", **fields) -> dict:
    """Write an agent document directly and return it."""
    doc = {
        "name": fields.pop("name", f"Agent {code}"),
        "code": code,
        "bankAccount": fields.pop("bank_account", "0011223344"),
        "discountRates": fields.pop("discount_rates", {}),
        "discountRatesByPointOfSale": fields.pop("discount_rates_by_point_of_sale", {}),
        "assignedPointOfSales": fields.pop("assigned_point_of_sales", []),
        "isActive": True,
    }
    store.set(f"agents/{agent_id}", doc)
    return doc


def merchant_row(code: str, amount: int, **fields) -> dict:
    """A raw merchant-side transaction row."""
    row = {
        "transactionCode": code,
        "amount": amount,
        "merchantCode": fields.pop("merchant_code", "M01"),
        "pointOfSaleName": fields.pop("point_of_sale_name", "POS_A"),
        "paymentMethod": fields.pop("payment_method", "QR 1 (VNPay)"),
        "transactionDate": fields.pop("transaction_date", "2024-03-15"),
    }
    row.update(fields)
    return row


def agent_row(code: str, amount: int, **fields) -> dict:
    """A raw agent-side transaction row."""
    row = {
        "transactionCode": code,
        "amount": amount,
        "agentId": fields.pop("agent_id", "ag1"),
        "pointOfSaleName": fields.pop("point_of_sale_name", "POS_A"),
    }
    row.update(fields)
    return row


def seed_merchant(store, merchant_id: str = "m1", code: str = "M01", admin_accounts=None, **fields) -> dict:
    """Write a merchant document directly and return it."""
    doc = {
        "name": fields.pop("name", f"Merchant {code}"),
        "code": code,
        "bankAccount": fields.pop("bank_account", ""),
        "bankName": fields.pop("bank_name", ""),
        "adminAccounts": list(admin_accounts or []),
        "pointOfSaleName": fields.pop("point_of_sale_name", "POS_A"),
        "isActive": True,
    }
    store.set(f"merchants/{merchant_id}", doc)
    return doc
