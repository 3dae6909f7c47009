import logging

import pytest

from plangraph.context import deep_clone, evaluate_condition, resolve_path, set_path, substitute_vars


@pytest.fixture
def context():
    return {
        "user": {"name": "Ada", "tags": ["math", "engines"], "age": 36},
        "items": [{"id": 1}, {"id": 2}],
        "flag": True,
        "count": 15,
    }


@pytest.mark.parametrize(
    "path, expected",
    [
        ("user.name", "Ada"),
        ("user.tags[1]", "engines"),
        ("user.tags.0", "math"),
        ("items[1].id", 2),
        ("user.missing", None),
        ("user.name.first", None),
        ("items[5].id", None),
        ("", None),
    ],
)
def test_resolve_path(context, path, expected):
    assert resolve_path(context, path) == expected


def test_set_path_creates_intermediates():
    ctx = {}
    set_path(ctx, "a.b[2].c", 42)

    assert resolve_path(ctx, "a.b[2].c") == 42
    assert ctx == {"a": {"b": {"2": {"c": 42}}}}


def test_set_path_writes_into_existing_list():
    ctx = {"a": {"b": [0]}}
    set_path(ctx, "a.b[2]", "x")

    assert ctx["a"]["b"] == [0, None, "x"]


def test_set_path_overwrites_scalar_intermediate():
    ctx = {"a": 5}
    set_path(ctx, "a.b", 1)

    assert ctx == {"a": {"b": 1}}


def test_set_path_returns_same_context():
    ctx = {}
    assert set_path(ctx, "x", 1) is ctx


def test_set_path_rejects_named_key_on_list():
    with pytest.raises(TypeError):
        set_path({"a": []}, "a.name", 1)


def test_deep_clone_is_independent(context):
    cloned = deep_clone(context)
    cloned["user"]["tags"].append("poetry")

    assert cloned == {**context, "user": {**context["user"], "tags": ["math", "engines", "poetry"]}}
    assert context["user"]["tags"] == ["math", "engines"]


def test_deep_clone_returns_original_for_unserializable(caplog):
    value = {"callback": print}

    with caplog.at_level(logging.WARNING):
        assert deep_clone(value) is value

    assert "Failed to deep clone" in caplog.text


def test_substitute_exact_template_keeps_type(context):
    assert substitute_vars("{{ user.tags }}", context) == ["math", "engines"]
    assert substitute_vars("{{count}}", context) == 15
    assert substitute_vars("{{ nothing }}", context) is None


def test_substitute_inline_template_stringifies(context):
    assert substitute_vars("Hi ${user.name}, you are ${user.age}", context) == "Hi Ada, you are 36"
    assert substitute_vars("flag=${flag} missing=${nope}", context) == "flag=true missing="
    assert substitute_vars("tags: ${user.tags}", context) == 'tags: ["math", "engines"]'


def test_substitute_walks_nested_structures(context):
    template = {"query": {"name": "{{user.name}}", "ids": ["{{items[0].id}}", "${items[1].id}"]}, "n": 3}

    assert substitute_vars(template, context) == {"query": {"name": "Ada", "ids": [1, "2"]}, "n": 3}


def test_substitute_does_not_mutate_template(context):
    template = {"a": ["{{count}}"]}
    substitute_vars(template, context)

    assert template == {"a": ["{{count}}"]}


@pytest.mark.parametrize(
    "condition, expected",
    [
        ("${count} > 10", True),
        ("count > 20", False),
        ("user.name == 'Ada'", True),
        ("flag && count === 15", True),
        ("!flag || count < 0", False),
        ("user.name !== 'Ada && Bob'", True),
        ("user.age != null", True),
        ("items.length > 1", True),
        ("!items.length", False),
        ("user.name.length === 3", True),
        ("user.name !== 'x.length'", True),
    ],
)
def test_evaluate_condition(context, condition, expected):
    assert evaluate_condition(condition, context) is expected


def test_evaluate_condition_returns_false_on_error(context, caplog):
    with caplog.at_level(logging.WARNING):
        assert evaluate_condition("count >", context) is False

    assert "Failed to evaluate condition" in caplog.text
