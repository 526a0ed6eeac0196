# triangle/settings.py
import json
from typing import Any, Dict
from flask import current_app
from extensions import db
from models import AdminSetting


class SettingsHelper:
    """
    Runtime admin settings stored as typed key/value rows.
    Values fall back to application config when no row exists.
    """

    DEFAULTS = {
        "REGISTRATION_ENABLED": True,
        "MAINTENANCE_MODE": False,
    }

    # Setting key -> Config attribute used when the setting was never saved
    CONFIG_FALLBACKS = {
        "depositWallet": "DEPOSIT_WALLET",
        "depositCoin": "DEPOSIT_COIN",
        "depositNetwork": "DEPOSIT_NETWORK",
    }

    @staticmethod
    def _decode(setting: AdminSetting) -> Any:
        if setting.type == "number":
            number = float(setting.value)
            return int(number) if number.is_integer() else number
        if setting.type == "boolean":
            return setting.value == "true"
        if setting.type == "json":
            try:
                return json.loads(setting.value)
            except ValueError:
                return setting.value
        return setting.value

    @staticmethod
    def _encode(value: Any):
        if isinstance(value, bool):
            return ("true" if value else "false"), "boolean"
        if isinstance(value, (int, float)):
            return str(value), "number"
        if isinstance(value, (dict, list)):
            return json.dumps(value), "json"
        return str(value), "string"

    @staticmethod
    def get(key: str, default: Any = None) -> Any:
        setting = AdminSetting.query.filter_by(key=key).first()
        if setting:
            return SettingsHelper._decode(setting)
        if key in SettingsHelper.CONFIG_FALLBACKS:
            return current_app.config.get(SettingsHelper.CONFIG_FALLBACKS[key], default)
        return SettingsHelper.DEFAULTS.get(key, default)

    @staticmethod
    def all() -> Dict[str, Any]:
        config = dict(SettingsHelper.DEFAULTS)
        for key, attr in SettingsHelper.CONFIG_FALLBACKS.items():
            config[key] = current_app.config.get(attr)
        for setting in AdminSetting.query.order_by(AdminSetting.key).all():
            config[setting.key] = SettingsHelper._decode(setting)
        return config

    @staticmethod
    def update(values: Dict[str, Any]) -> Dict[str, Any]:
        """Upsert every key in `values`. Caller commits."""
        for key, value in values.items():
            encoded, value_type = SettingsHelper._encode(value)
            setting = AdminSetting.query.filter_by(key=key).first()
            if not setting:
                setting = AdminSetting(key=key)
                db.session.add(setting)
            setting.value = encoded
            setting.type = value_type
        db.session.flush()
        current_app.logger.info(f"Admin settings updated: {', '.join(sorted(values))}")
        return SettingsHelper.all()

    @staticmethod
    def registration_enabled() -> bool:
        return bool(SettingsHelper.get("REGISTRATION_ENABLED", True))

    @staticmethod
    def deposit_instructions() -> Dict[str, Any]:
        return {
            "wallet": SettingsHelper.get("depositWallet"),
            "coin": SettingsHelper.get("depositCoin"),
            "network": SettingsHelper.get("depositNetwork"),
        }
