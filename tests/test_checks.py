"""Tests for the check model, glob filtering and the gh checks fetcher."""

from __future__ import annotations

import json
import subprocess  # noqa: S404
from typing import TYPE_CHECKING

import pytest
from helpers.builders import check

if TYPE_CHECKING:
    from pytest_mock import MockerFixture

from prloop.checks import (
    CheckStatus,
    GhChecksFetcher,
    InMemoryChecksFetcher,
    InvalidGlobError,
    filter_checks,
    get_checks_summary,
)
from prloop.gh import GhError

# ---------------------------------------------------------------------------
# Status mapping
# ---------------------------------------------------------------------------


class TestFromBucket:
    @pytest.mark.parametrize(
        ("bucket", "expected"),
        [
            ("pass", CheckStatus.PASS),
            ("fail", CheckStatus.FAIL),
            ("pending", CheckStatus.PENDING),
            ("skipping", CheckStatus.SKIPPING),
            ("cancel", CheckStatus.CANCELLED),
        ],
    )
    def test_known_buckets(self, bucket: str, expected: CheckStatus):
        assert CheckStatus.from_bucket(bucket) == expected

    @pytest.mark.parametrize("bucket", ["", "neutral", "PASS", "stale"])
    def test_unknown_bucket_is_pending(self, bucket: str):
        assert CheckStatus.from_bucket(bucket) == CheckStatus.PENDING


# ---------------------------------------------------------------------------
# Filtering
# ---------------------------------------------------------------------------

CHECKS = [
    check("build"),
    check("test-unit"),
    check("test-integration"),
    check("lint"),
    check("ci/circleci: deploy"),
]


def _names(checks):
    return [c.name for c in checks]


class TestFilterChecks:
    def test_no_patterns_is_identity(self):
        assert filter_checks(CHECKS) == CHECKS
        assert filter_checks(CHECKS, [], []) == CHECKS

    def test_include_only(self):
        assert _names(filter_checks(CHECKS, ["test-*"])) == ["test-unit", "test-integration"]

    def test_exclude_only(self):
        assert _names(filter_checks(CHECKS, None, ["test-*"])) == ["build", "lint", "ci/circleci: deploy"]

    def test_exclude_wins_over_include(self):
        result = filter_checks(CHECKS, ["test-*"], ["*integration"])
        assert _names(result) == ["test-unit"]

    def test_name_matching_both_is_excluded(self):
        assert filter_checks(CHECKS, ["build"], ["build"]) == []

    def test_multiple_includes_are_a_union(self):
        assert _names(filter_checks(CHECKS, ["build", "lint"])) == ["build", "lint"]

    def test_question_mark_and_character_class(self):
        checks = [check("py311"), check("py312"), check("py3x")]
        assert _names(filter_checks(checks, ["py31?"])) == ["py311", "py312"]
        assert _names(filter_checks(checks, ["py31[2-9]"])) == ["py312"]
        assert _names(filter_checks(checks, ["py3[!1]"])) == ["py3x"]

    def test_matching_is_case_sensitive(self):
        assert filter_checks([check("Build")], ["build"]) == []

    def test_star_crosses_slashes(self):
        assert _names(filter_checks(CHECKS, ["ci/*"])) == ["ci/circleci: deploy"]

    def test_preserves_input_order(self):
        checks = [check("z"), check("a"), check("m")]
        assert _names(filter_checks(checks, ["*"])) == ["z", "a", "m"]


class TestInvalidPatterns:
    @pytest.mark.parametrize("pattern", ["[abc", "test-[", "***", "a**", "**b", "x/**y"])
    def test_invalid_include(self, pattern: str):
        with pytest.raises(InvalidGlobError, match="Invalid include pattern") as exc_info:
            filter_checks(CHECKS, [pattern])
        assert exc_info.value.pattern == pattern

    def test_invalid_exclude(self):
        with pytest.raises(InvalidGlobError, match=r"Invalid exclude pattern: \[oops"):
            filter_checks(CHECKS, None, ["[oops"])

    def test_invalid_pattern_raised_even_without_checks(self):
        with pytest.raises(InvalidGlobError):
            filter_checks([], ["[x"])

    def test_is_a_value_error(self):
        with pytest.raises(ValueError, match="Invalid include pattern"):
            filter_checks(CHECKS, ["[x"])

    @pytest.mark.parametrize("pattern", ["**", "**/lint", "ci/**", "a/**/b", "[]]x", "[!]]", "*-*"])
    def test_valid_edge_patterns(self, pattern: str):
        filter_checks(CHECKS, [pattern])


# ---------------------------------------------------------------------------
# Fetchers
# ---------------------------------------------------------------------------


def _patch_run(mocker: MockerFixture, stdout: str = "", stderr: str = "", returncode: int = 0):
    result = subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)
    return mocker.patch("prloop.gh.subprocess.run", return_value=result)


GH_CHECKS_OUTPUT = [
    {"name": "build", "bucket": "pass", "link": "https://example.com/1", "description": ""},
    {"name": "test", "bucket": "fail", "link": "https://circleci.com/gh/o/r/42", "description": ""},
    {"name": "deploy", "bucket": "pending", "link": "", "description": ""},
    {"name": "docs", "bucket": "cancel", "description": ""},
    {"name": "odd", "bucket": "mystery", "link": None},
]


class TestGhChecksFetcher:
    def test_parses_checks(self, mocker: MockerFixture):
        mock = _patch_run(mocker, stdout=json.dumps(GH_CHECKS_OUTPUT))
        checks = GhChecksFetcher().fetch_checks("owner", "repo", 42)

        assert [(c.name, c.status) for c in checks] == [
            ("build", CheckStatus.PASS),
            ("test", CheckStatus.FAIL),
            ("deploy", CheckStatus.PENDING),
            ("docs", CheckStatus.CANCELLED),
            ("odd", CheckStatus.PENDING),
        ]
        assert checks[1].url == "https://circleci.com/gh/o/r/42"
        assert checks[2].url is None
        assert checks[3].url is None
        args = mock.call_args[0][0]
        assert args[:4] == ["gh", "pr", "checks", "42"]
        assert "owner/repo" in args
        assert "name,bucket,link,description" in args

    def test_pending_exit_code_is_not_an_error(self, mocker: MockerFixture):
        _patch_run(mocker, stdout=json.dumps(GH_CHECKS_OUTPUT[:1]), returncode=8)
        checks = GhChecksFetcher().fetch_checks("owner", "repo", 42)
        assert [c.name for c in checks] == ["build"]

    def test_other_exit_code_raises(self, mocker: MockerFixture):
        _patch_run(mocker, stderr="no checks reported", returncode=1)
        with pytest.raises(GhError, match="no checks reported"):
            GhChecksFetcher().fetch_checks("owner", "repo", 42)

    @pytest.mark.parametrize(
        "payload",
        [
            [{"bucket": "pass"}],
            [{"name": None, "bucket": "pass"}],
            ["build"],
            {"name": "build"},
        ],
    )
    def test_malformed_output_raises_gh_error(self, mocker: MockerFixture, payload: object):
        _patch_run(mocker, stdout=json.dumps(payload))
        with pytest.raises(GhError, match="Failed to parse checks for owner/repo#42"):
            GhChecksFetcher().fetch_checks("owner", "repo", 42)


class TestGetChecksSummary:
    def test_filters_and_groups(self):
        fetcher = InMemoryChecksFetcher([
            check("build", CheckStatus.FAIL),
            check("lint", CheckStatus.FAIL),
            check("test", CheckStatus.PENDING),
        ])
        summary = get_checks_summary(fetcher, "o", "r", 1, exclude_patterns=["lint"])
        assert _names(summary.failed()) == ["build"]
        assert _names(summary.pending()) == ["test"]
        assert fetcher.calls == 1

    def test_fetch_error_propagates(self):
        fetcher = InMemoryChecksFetcher(error=GhError("boom"))
        with pytest.raises(GhError, match="boom"):
            get_checks_summary(fetcher, "o", "r", 1)
