import pytest

from modman_core.version import UNKNOWN_VERSION, Version


def v(raw):
    return Version.parse(raw)


@pytest.mark.parametrize("lower, higher", [
    ("1.0.0", "1.0.1"),
    ("1.2", "1.10"),
    ("1.9.9", "2.0"),
    ("1.0.0-beta", "1.0.0"),
    ("1.0.0-alpha", "1.0.0-beta"),
    ("1.0.0-beta.2", "1.0.0-beta.11"),
    ("1.0.0-1", "1.0.0-alpha"),
    ("garbage", "0.0.1"),
])
def test_ordering(lower, higher):
    assert v(lower) < v(higher)
    assert v(higher) > v(lower)


def test_trailing_zeros_are_insignificant():
    assert v("1.2") == v("1.2.0")
    assert v("1.2.0.0") == v("1.2")
    assert hash(v("1.2")) == hash(v("1.2.0"))


def test_leading_v_is_ignored():
    assert v("v1.0") == v("1.0")
    assert v("V2.3.1") == v("2.3.1")


def test_unknown_versions():
    unknown = v("not a version")
    assert not unknown.is_known
    assert unknown < v("0.0.1")
    assert v("abc") < v("abd")
    assert UNKNOWN_VERSION < v("0")
    assert str(UNKNOWN_VERSION) == "unknown"


def test_none_is_unknown():
    assert v(None) == UNKNOWN_VERSION


def test_prerelease_flag():
    assert v("1.0.0-rc1").is_prerelease
    assert v("1.0rc1").is_prerelease
    assert not v("1.0.0").is_prerelease


def test_str_keeps_raw_text():
    assert str(v("v1.2.0-beta")) == "v1.2.0-beta"


def test_comparison_with_other_types():
    assert v("1.0") != "1.0"
