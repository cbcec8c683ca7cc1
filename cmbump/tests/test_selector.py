from __future__ import annotations

import pytest

from cmbump.src.errors import ConfigError
from cmbump.src.selector import LabelSelector, SelectorError


def test_equality_selector_matches_exact_value() -> None:
    selector = LabelSelector.parse("config-bump=reload")

    assert selector.matches({"config-bump": "reload"})
    assert not selector.matches({"config-bump": "other"})
    assert not selector.matches({})


def test_double_equals_is_equality() -> None:
    selector = LabelSelector.parse("config-bump==reload")

    assert selector.matches({"config-bump": "reload", "extra": "x"})
    assert selector.expression == "config-bump==reload"


def test_multiple_clauses_are_anded() -> None:
    selector = LabelSelector.parse("app=proxy, tier!=canary")

    assert selector.matches({"app": "proxy"})
    assert selector.matches({"app": "proxy", "tier": "stable"})
    assert not selector.matches({"app": "proxy", "tier": "canary"})
    assert not selector.matches({"tier": "stable"})


def test_set_based_clauses() -> None:
    selector = LabelSelector.parse("env in (prod, staging),team notin (qa)")

    assert selector.matches({"env": "prod"})
    assert selector.matches({"env": "staging", "team": "web"})
    assert not selector.matches({"env": "dev"})
    assert not selector.matches({"env": "prod", "team": "qa"})


def test_existence_clauses() -> None:
    selector = LabelSelector.parse("reload,!paused")

    assert selector.matches({"reload": ""})
    assert not selector.matches({"reload": "yes", "paused": "true"})
    assert not selector.matches({"other": "x"})


def test_prefixed_keys_are_accepted() -> None:
    selector = LabelSelector.parse("example.com/config=haproxy")

    assert selector.matches({"example.com/config": "haproxy"})


def test_empty_selector_matches_everything() -> None:
    selector = LabelSelector.parse("  ")

    assert selector.requirements == ()
    assert selector.matches({"anything": "goes"})
    assert selector.matches(None)


@pytest.mark.parametrize(
    "expression",
    [
        "=value",
        "app=proxy,",
        "env in ()",
        "env in (prod",
        "env notin prod)",
        "bad key=value",
        "app=has space",
        "app=-leading-dash",
        "a=b=c",
    ],
)
def test_malformed_selectors_raise(expression: str) -> None:
    with pytest.raises(SelectorError):
        LabelSelector.parse(expression)


def test_empty_value_is_valid() -> None:
    selector = LabelSelector.parse("app=")

    assert selector.matches({"app": ""})
    assert not selector.matches({"app": "proxy"})


def test_selector_error_is_a_config_error() -> None:
    with pytest.raises(ConfigError):
        LabelSelector.parse("(")
