# ==========================================================================================================
# -------------- Configuration file for the PawnChain triangle engine -------------------------------------
# ==========================================================================================================
import os
from dotenv import load_dotenv


if os.environ.get("FLASK_ENV") != "production":
    load_dotenv()

basedir = os.path.abspath(os.path.dirname(__file__))


class Config:

    SECRET_KEY = os.getenv("SECRET_KEY")
    if not SECRET_KEY:
        raise ValueError("SECRET_KEY must be set in production")

    FLASK_ENV = os.getenv("FLASK_ENV", "production")
    DEBUG = os.getenv("DEBUG", "False").lower() in ("true", "1", "t")


    _database_url = os.getenv("DATABASE_URL")
    if not _database_url:
        _database_url = f"sqlite:///{os.path.join(basedir, 'instance', 'pawnchain.db')}"


    if _database_url.startswith("postgres://"):
        _database_url = _database_url.replace("postgres://", "postgresql+pg8000://", 1)

    SQLALCHEMY_DATABASE_URI = _database_url
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    # ------------------------------------------------------------------------------------------
    # Plan tiers: price in whole currency units, payout multiplier for the apex,
    # referral bonus rate paid to the direct referrer.
    # ------------------------------------------------------------------------------------------
    PLAN_CATALOG = {
        "King": {"price": "100.00", "payout_multiplier": 4, "referral_bonus_rate": "0.10",
                 "description": "Premium plan with the highest returns"},
        "Queen": {"price": "50.00", "payout_multiplier": 4, "referral_bonus_rate": "0.10",
                  "description": "High-tier plan"},
        "Bishop": {"price": "25.00", "payout_multiplier": 4, "referral_bonus_rate": "0.10",
                   "description": "Mid-tier plan"},
        "Knight": {"price": "10.00", "payout_multiplier": 4, "referral_bonus_rate": "0.10",
                   "description": "Entry-level plan"},
    }

    # Level 0 (apex) always pays the plan's own multiplier.
    LEVEL_PAYOUT_MULTIPLIERS = {
        1: int(os.getenv("LEVEL1_PAYOUT_MULTIPLIER", "3")),
        2: int(os.getenv("LEAF_PAYOUT_MULTIPLIER", "2")),
        3: int(os.getenv("LEAF_PAYOUT_MULTIPLIER", "2")),
    }

    # Which two positions seed the successor formations when a formation splits.
    SPLIT_APEX_KEYS = {
        "default": ("B", "C"),
    }

    # Pending payouts expire after this many hours. None disables expiry.
    _payout_hold = os.getenv("PAYOUT_HOLD_HOURS")
    PAYOUT_HOLD_HOURS = int(_payout_hold) if _payout_hold else None

    PLACEMENT_MAX_RETRIES = int(os.getenv("PLACEMENT_MAX_RETRIES", "5"))

    DEPOSIT_WALLET = os.getenv("CRYPTO_WALLET_ADDRESS", "TBD...")
    DEPOSIT_COIN = os.getenv("DEPOSIT_COIN", "USDT")
    DEPOSIT_NETWORK = os.getenv("DEPOSIT_NETWORK", "TRON (TRC20)")


class TestConfig(Config):
    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", "sqlite:///:memory:")
    SQLALCHEMY_ENGINE_OPTIONS = {}
    PLAN_CATALOG = {
        "King": {"price": "1.00", "payout_multiplier": 4, "referral_bonus_rate": "0.10"},
        "Queen": {"price": "0.50", "payout_multiplier": 4, "referral_bonus_rate": "0.10"},
        "Bishop": {"price": "0.25", "payout_multiplier": 4, "referral_bonus_rate": "0.10"},
        "Knight": {"price": "0.10", "payout_multiplier": 4, "referral_bonus_rate": "0.10"},
    }
    PAYOUT_HOLD_HOURS = None
