"""Tests for release version normalization and comparison."""

import pytest

from vidfetch.updater.versioning import compare_versions, is_newer, normalize_version


class TestNormalize:
    """Version string cleanup."""

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("2024.01.10", "2024.1.10"),
            ("v2024.01.10", "2024.1.10"),
            (" 2024.1.10\n", "2024.1.10"),
            ("2023.12.30", "2023.12.30"),
        ],
    )
    def test_normalize(self, raw: str, expected: str) -> None:
        assert normalize_version(raw) == expected

    @pytest.mark.parametrize("raw", ["", "latest", "2024.01.x", "2024..1"])
    def test_garbage_is_rejected(self, raw: str) -> None:
        with pytest.raises(ValueError):
            normalize_version(raw)


class TestCompare:
    """Ordering of date-based versions."""

    def test_zero_padding_does_not_matter(self) -> None:
        assert compare_versions("2024.01.10", "2024.1.10") == 0

    def test_numeric_not_lexicographic(self) -> None:
        assert compare_versions("2024.2.1", "2024.1.10") == 1
        assert compare_versions("2024.1.10", "2024.2.1") == -1

    def test_trailing_zero_component_is_equal(self) -> None:
        assert compare_versions("2024.1", "2024.1.0") == 0

    def test_is_newer(self) -> None:
        assert is_newer("2024.03.10", "2024.01.10")
        assert not is_newer("2024.01.10", "2024.1.10")
