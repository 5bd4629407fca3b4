import dataclasses
from decimal import Decimal

import pytest
from pydantic import ValidationError

from commission_schedule import DEFAULT_SCHEDULE
from config import CommissionConfig, Settings


def test_defaults(monkeypatch):
    for key in ("AFFILIATE_PAYOUT_THRESHOLD", "AFFILIATE_COMMISSION_LEVEL_1"):
        monkeypatch.delenv(key, raising=False)

    config = Settings(_env_file=None).commission_config()

    assert dict(config.schedule) == {1: 800, 2: 400, 3: 200, 4: 100, 5: 100, 6: 100, 7: 100, 8: 100}
    assert config.payout_threshold == 5000
    assert config.default_payout_provider == "stripe"


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("AFFILIATE_COMMISSION_LEVEL_1", "10.50")
    monkeypatch.setenv("AFFILIATE_PAYOUT_THRESHOLD", "25")
    monkeypatch.setenv("AFFILIATE_DEFAULT_PAYOUT_PROVIDER", "PayPal")

    settings = Settings(_env_file=None)
    config = settings.commission_config()

    assert settings.commission_level_1 == Decimal("10.50")
    assert config.schedule[1] == 1050
    assert config.payout_threshold == 2500
    assert config.default_payout_provider == "paypal"


def test_negative_amount_rejected():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, commission_level_3=Decimal("-1"))


def test_unknown_provider_rejected():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, default_payout_provider="venmo")


def test_commission_config_is_immutable():
    config = Settings(_env_file=None).commission_config()
    with pytest.raises(dataclasses.FrozenInstanceError):
        config.payout_threshold = 1


def test_commission_config_defaults_to_standard_schedule():
    config = CommissionConfig()
    assert config.schedule is DEFAULT_SCHEDULE
    assert config.schedule[1] == 800
    assert config.payout_threshold == 5000
