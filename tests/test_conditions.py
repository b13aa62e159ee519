"""Tests for condition helpers and variable validators."""
import pytest

from models.schemas import ValidatorType, VariableValidator
from utils.conditions import (
    capture_parameters, coerce_score, condition_passes, literal_match, pattern_error, regex_search,
)
from utils.validators import is_valid, validate_value


class TestMatching:
    def test_literal_is_case_insensitive_substring(self):
        assert literal_match("Where IS my order?", "where is my order")
        assert not literal_match("where is it", "order")

    def test_regex_search(self):
        assert regex_search("order A-12", r"[A-Z]-\d+")
        assert regex_search("order a-12", r"[A-Z]-\d+") is None

    def test_pattern_error(self):
        assert pattern_error(r"\d+") is None
        assert pattern_error("(unclosed") is not None

    def test_positional_captures(self):
        m = regex_search("ship A-1 to Paris", r"ship (\S+) to (\S+)")
        assert capture_parameters(m, ["order_id", "city"]) == {"order_id": "A-1", "city": "Paris"}

    def test_extra_groups_ignored(self):
        m = regex_search("ship A-1 to Paris", r"ship (\S+) to (\S+)")
        assert capture_parameters(m, ["order_id"]) == {"order_id": "A-1"}

    def test_named_groups(self):
        m = regex_search("ship A-1", r"ship (?P<order_id>\S+)")
        assert capture_parameters(m, []) == {"order_id": "A-1"}

    def test_optional_group_not_participating(self):
        m = regex_search("ship A-1", r"ship (\S+)( express)?")
        assert capture_parameters(m, ["order_id", "speed"]) == {"order_id": "A-1"}


class TestScores:
    @pytest.mark.parametrize("raw,expected", [(True, 1.0), (False, 0.0), (0.4, 0.4), (2, 1.0), (-1, 0.0)])
    def test_coerce(self, raw, expected):
        assert coerce_score(raw) == expected

    def test_coerce_rejects_other_types(self):
        with pytest.raises(TypeError):
            coerce_score("0.9")

    def test_condition_passes(self):
        assert condition_passes(True, 0.9)
        assert not condition_passes(False, 0.0)
        assert condition_passes(0.5, 0.5)
        assert not condition_passes(0.49, 0.5)


class TestValidators:
    def test_string_constraints(self):
        v = VariableValidator(type=ValidatorType.STRING, min_length=2, max_length=5, pattern=r"^[a-z]+$")
        assert is_valid(v, "abc")
        assert validate_value(v, "a") == ["length 1 is below min_length 2"]
        assert len(validate_value(v, "ABCDEFG")) == 2
        assert validate_value(v, 3) == ["expected a string"]

    def test_integer_range(self):
        v = VariableValidator(type=ValidatorType.INTEGER, min=1, max=10)
        assert is_valid(v, 5)
        assert not is_valid(v, 11)
        assert not is_valid(v, True)
        assert not is_valid(v, 2.5)

    def test_float(self):
        v = VariableValidator(type=ValidatorType.FLOAT, min=0.0)
        assert is_valid(v, 1)
        assert is_valid(v, 0.5)
        assert not is_valid(v, -0.1)

    def test_boolean(self):
        v = VariableValidator(type=ValidatorType.BOOLEAN)
        assert is_valid(v, False)
        assert not is_valid(v, "yes")

    def test_email(self):
        v = VariableValidator(type=ValidatorType.EMAIL)
        assert is_valid(v, "someone@example.com")
        assert not is_valid(v, "someone@")

    def test_url(self):
        v = VariableValidator(type=ValidatorType.URL)
        assert is_valid(v, "https://example.com/a")
        assert not is_valid(v, "example.com")

    def test_date_and_datetime(self):
        assert is_valid(VariableValidator(type=ValidatorType.DATE), "2025-02-28")
        assert not is_valid(VariableValidator(type=ValidatorType.DATE), "2025-02-30")
        assert is_valid(VariableValidator(type=ValidatorType.DATETIME), "2025-02-28T10:00:00Z")
        assert not is_valid(VariableValidator(type=ValidatorType.DATETIME), "yesterday")

    def test_enum(self):
        v = VariableValidator(type=ValidatorType.ENUM, allowed_values=["gold", "silver"])
        assert is_valid(v, "gold")
        assert not is_valid(v, "bronze")
