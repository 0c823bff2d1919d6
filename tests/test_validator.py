"""
Tests for strategy configuration validation.
"""

import pytest

from gridengine.config.validator import (
    ConfigurationError,
    StrategyValidator,
    ValidationIssue,
    ValidationSeverity,
    validate_or_raise,
)

from conftest import make_strategy


def raw(**overrides):
    data = make_strategy().to_dict()
    data.update(overrides)
    return data


def error_fields(result):
    return {i.field for i in result.get_errors()}


@pytest.fixture
def validator():
    return StrategyValidator()


class TestStrategyValidator:
    """Tests for individual checks."""

    def test_valid(self, validator):
        result = validator.validate(raw())
        assert result.valid
        assert result.issues == []

    def test_missing_required(self, validator):
        result = validator.validate(raw(api_key="", symbol=None))
        assert not result.valid
        assert {"api_key", "symbol"} <= error_fields(result)

    def test_bad_symbol(self, validator):
        result = validator.validate(raw(symbol="BTC-PERP"))
        assert "symbol" in error_fields(result)

    def test_lowercase_symbol_accepted(self, validator):
        assert validator.validate(raw(symbol="btcusdt")).valid

    def test_bad_side(self, validator):
        assert "position_side" in error_fields(validator.validate(raw(position_side="BOTH")))

    def test_inverted_bounds(self, validator):
        result = validator.validate(raw(price_min=100000.0, price_max=90000.0))
        assert "price_min" in error_fields(result)

    def test_non_positive_bound(self, validator):
        assert "price_min" in error_fields(validator.validate(raw(price_min=0)))
        assert "price_max" in error_fields(validator.validate(raw(price_max="abc")))

    def test_both_spacings_rejected(self, validator):
        assert "grid_step" in error_fields(validator.validate(raw(grid_count=10)))

    def test_neither_spacing_rejected(self, validator):
        assert "grid_step" in error_fields(validator.validate(raw(grid_step=None)))

    def test_grid_count(self, validator):
        assert validator.validate(raw(grid_step=None, grid_count=10)).valid
        assert "grid_count" in error_fields(validator.validate(raw(grid_step=None, grid_count=2.5)))
        assert "grid_count" in error_fields(validator.validate(raw(grid_step=None, grid_count=0)))

    def test_step_leaving_single_level(self, validator):
        result = validator.validate(raw(grid_step=20000.0))
        assert "grid_step" in error_fields(result)

    def test_many_levels_warns(self, validator):
        result = validator.validate(raw(grid_step=10.0))
        assert result.valid
        assert [w.field for w in result.get_warnings()] == ["grid_step"]

    def test_order_size(self, validator):
        assert "order_size" in error_fields(validator.validate(raw(order_size=0)))

    def test_position_cap(self, validator):
        assert "max_position_quantity" in error_fields(validator.validate(raw(max_position_quantity=-1)))
        result = validator.validate(raw(max_position_quantity=0.0005))
        assert result.valid
        assert result.get_warnings()[0].field == "max_position_quantity"

    def test_directional_sizes(self, validator):
        assert "open_quantity" in error_fields(validator.validate(raw(open_quantity=0)))
        assert "close_quantity" in error_fields(validator.validate(raw(close_quantity=-0.001)))
        assert validator.validate(raw(open_quantity=0.002, close_quantity=0.001)).valid

    def test_position_floor_below_cap(self, validator):
        assert "min_position_quantity" in error_fields(validator.validate(raw(min_position_quantity=0)))
        result = validator.validate(raw(min_position_quantity=0.01, max_position_quantity=0.01))
        assert "min_position_quantity" in error_fields(result)
        assert validator.validate(raw(min_position_quantity=0.002, max_position_quantity=0.01)).valid

    def test_polling_interval(self, validator):
        assert "polling_interval_sec" in error_fields(validator.validate(raw(polling_interval_sec=0)))
        fast = validator.validate(raw(polling_interval_sec=0.5))
        assert fast.valid
        assert fast.get_warnings()[0].field == "polling_interval_sec"
        assert validator.validate(raw(polling_interval_sec=5)).issues == []

    def test_leverage(self, validator):
        assert "leverage" in error_fields(validator.validate(raw(leverage=0)))
        assert "leverage" in error_fields(validator.validate(raw(leverage=126)))
        assert "leverage" in error_fields(validator.validate(raw(leverage=2.5)))
        high = validator.validate(raw(leverage=50))
        assert high.valid
        assert high.get_warnings()[0].severity == ValidationSeverity.WARNING

    def test_custom_validator(self, validator):
        validator.register_validator(
            lambda r: [ValidationIssue("remark", "remark required")] if not r.get("remark") else []
        )
        assert "remark" in error_fields(validator.validate(raw()))
        assert validator.validate(raw(remark="ok")).valid


class TestValidateOrRaise:
    """Tests for the raising wrapper."""

    def test_raises_with_issues(self):
        with pytest.raises(ConfigurationError) as exc_info:
            validate_or_raise(raw(order_size=-1, leverage=500))
        fields = {i.field for i in exc_info.value.issues}
        assert fields == {"order_size", "leverage"}
        assert "order_size" in str(exc_info.value)

    def test_configuration_error_is_value_error(self):
        with pytest.raises(ValueError):
            validate_or_raise(raw(symbol=""))

    def test_returns_result_with_warnings(self):
        result = validate_or_raise(raw(leverage=50))
        assert result.valid
        assert len(result.get_warnings()) == 1
