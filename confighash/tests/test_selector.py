from __future__ import annotations

from types import SimpleNamespace

import pytest

from confighash.src.selector import (
    Operator,
    Selector,
    SelectorError,
    is_qualified_name,
    labels_of,
    parse_selector,
)
from confighash.src.sources import ConfigSource, SourceKind


def test_blank_selector_matches_everything() -> None:
    for text in (None, "", "   "):
        selector = parse_selector(text)
        assert selector.empty
        assert selector.matches({})
        assert selector.matches({"app": "anything"})
        assert str(selector) == ""


def test_equality_requirement() -> None:
    selector = parse_selector("app.kubernetes.io/name=synapse")

    assert selector.matches({"app.kubernetes.io/name": "synapse", "tier": "edge"})
    assert not selector.matches({"app.kubernetes.io/name": "other"})
    assert not selector.matches({})


def test_double_equals_is_equality() -> None:
    selector = parse_selector("app==synapse")

    assert selector.requirements[0].operator is Operator.EQUALS
    assert str(selector) == "app=synapse"


def test_not_equals_matches_missing_key() -> None:
    selector = parse_selector("env!=prod")

    assert selector.matches({})
    assert selector.matches({"env": "test"})
    assert not selector.matches({"env": "prod"})


def test_set_based_requirements() -> None:
    selector = parse_selector("env in (prod, staging),tier notin (batch)")

    assert selector.matches({"env": "prod"})
    assert selector.matches({"env": "staging", "tier": "web"})
    assert not selector.matches({"env": "dev"})
    assert not selector.matches({"env": "prod", "tier": "batch"})


def test_exists_and_does_not_exist() -> None:
    selector = parse_selector("managed,!legacy")

    assert selector.matches({"managed": ""})
    assert not selector.matches({})
    assert not selector.matches({"managed": "true", "legacy": "yes"})


def test_numeric_comparisons() -> None:
    selector = parse_selector("generation>2,generation<10")

    assert selector.matches({"generation": "5"})
    assert not selector.matches({"generation": "2"})
    assert not selector.matches({"generation": "not-a-number"})
    assert not selector.matches({})


def test_requirements_are_sorted_for_canonical_rendering() -> None:
    first = parse_selector("tier=web,app=synapse")
    second = parse_selector("app=synapse, tier=web")

    assert first == second
    assert str(first) == "app=synapse,tier=web"


def test_round_trips_through_string_form() -> None:
    selector = parse_selector("app=synapse,env in (b,a),!legacy")

    assert parse_selector(str(selector)) == selector


@pytest.mark.parametrize(
    "text",
    [
        "=synapse",
        "app=syn apse",
        "app in (a,b",
        "app in a,b)",
        "app=synapse,,tier=web",
        "-bad-key=value",
        "app=-bad-value-",
        "count>abc",
        "app synapse",
    ],
)
def test_invalid_selectors_raise(text: str) -> None:
    with pytest.raises(SelectorError):
        parse_selector(text)


def test_empty_value_is_allowed() -> None:
    selector = parse_selector("app=")

    assert selector.matches({"app": ""})
    assert not selector.matches({"app": "synapse"})


def test_selector_error_is_value_error() -> None:
    with pytest.raises(ValueError):
        parse_selector("app in (a")


def test_qualified_name_validation() -> None:
    assert is_qualified_name("synapse.gen0sec.com/config-hash")
    assert is_qualified_name("config-hash")
    assert not is_qualified_name("")
    assert not is_qualified_name("/config-hash")
    assert not is_qualified_name("Bad_Prefix/config-hash")
    assert not is_qualified_name("x" * 64)


def test_matches_object_reads_metadata_labels() -> None:
    selector = parse_selector("app=synapse")
    obj = SimpleNamespace(metadata=SimpleNamespace(labels={"app": "synapse"}))

    assert selector.matches_object(obj)
    assert not selector.matches_object(SimpleNamespace(metadata=SimpleNamespace(labels=None)))
    assert not selector.matches_object(None)


def test_matches_object_uses_labels_capability() -> None:
    selector = parse_selector("app=synapse")
    source = ConfigSource(
        kind=SourceKind.CONFIG_MAP,
        namespace="edge",
        name="app",
        labels={"app": "synapse"},
    )

    assert labels_of(source) == {"app": "synapse"}
    assert selector.matches_object(source)


def test_everything_matches_unlabelled_objects() -> None:
    assert Selector.everything().matches_object(SimpleNamespace(metadata=SimpleNamespace()))
