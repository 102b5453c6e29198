# backend/posledger/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///posledger.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Low-stock thresholds applied to new products when none are given
    DEFAULT_MIN_STOCK_DEPOSITO = int(os.environ.get("DEFAULT_MIN_STOCK_DEPOSITO", "10"))
    DEFAULT_MIN_STOCK_VENTA = int(os.environ.get("DEFAULT_MIN_STOCK_VENTA", "5"))

    RECEIPT_PREFIX = os.environ.get("RECEIPT_PREFIX", "REC")

    STOCK_MOVEMENT_HISTORY_LIMIT = 50
    TRANSACTION_RETRY_ATTEMPTS = 3
