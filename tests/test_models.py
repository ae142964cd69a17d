import pytest
from pydantic import ValidationError

from copybot.core.models import SourceConfig


class TestSourceConfig:

    def test_default_size_clears_min_order_at_any_price(self):
        cfg = SourceConfig()
        for price in (0.41, 0.75, 0.99):
            assert cfg.fixed_trade_size / price >= 5.0

    def test_inverted_price_limits_rejected(self):
        with pytest.raises(ValidationError, match="price_limits_min"):
            SourceConfig(price_limits_min=0.8, price_limits_max=0.2)

    def test_inverted_value_bounds_rejected(self):
        with pytest.raises(ValidationError, match="min_trade_value_usd"):
            SourceConfig(min_trade_value_usd=500, max_trade_value_usd=100)

    def test_one_sided_value_bound_allowed(self):
        cfg = SourceConfig(min_trade_value_usd=500)
        assert cfg.max_trade_value_usd is None

    def test_equal_bounds_allowed(self):
        cfg = SourceConfig(price_limits_min=0.5, price_limits_max=0.5)
        assert cfg.price_limits_min == cfg.price_limits_max
