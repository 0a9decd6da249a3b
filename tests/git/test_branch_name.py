"""Unit tests for run branch name generation."""

import re
from datetime import UTC, datetime

import pytest

from repo_conductor.git.branch_name import (
    DEFAULT_BRANCH_TEMPLATE,
    FALLBACK_BRANCH_NAME,
    generate_branch_name,
    sanitize_branch_name,
)

FIXED_NOW = datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC)


class TestGenerateBranchName:
    def test_default_template(self):
        assert DEFAULT_BRANCH_TEMPLATE == "conductor/{workflow}/{run-id}"
        assert generate_branch_name(None, workflow="Fix Bugs", run_id="a1b2") == "conductor/fix-bugs/a1b2"

    def test_blank_template_uses_default(self):
        assert generate_branch_name("   ", workflow="w", run_id="r") == "conductor/w/r"

    def test_all_tokens(self):
        name = generate_branch_name(
            "{workflow}/{phase}/{issue-id}-{date}-{timestamp}",
            workflow="implement",
            run_id="r1",
            phase="Code Review",
            issue_id="42",
            now=FIXED_NOW,
        )

        assert name == f"implement/code-review/42-2026-01-02-{int(FIXED_NOW.timestamp())}"

    def test_missing_token_values_collapse(self):
        name = generate_branch_name("feature/{issue-id}/{run-id}", workflow="w", run_id="r1")

        assert name == "feature/r1"

    def test_token_values_cannot_add_path_segments(self):
        name = generate_branch_name("{workflow}/{run-id}", workflow="a/b\\c", run_id="r")

        assert name == "a-b-c/r"

    def test_short_hash(self):
        name = generate_branch_name("{short-hash}", workflow="w", run_id="r")

        assert re.fullmatch(r"[0-9a-f]{7}", name)

    def test_unknown_placeholder_is_sanitized_not_expanded(self):
        assert generate_branch_name("x/{nope}", workflow="w", run_id="r") == "x/{nope}"


class TestSanitizeBranchName:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("my branch~name^", "my-branch-name"),
            ("release..v1.lock", "release.v1"),
            ("a//b", "a/b"),
            ("topic:fix?*", "topic-fix"),
            ("ref@{1}", "ref-1}"),
            ("tab\tand\nnewline", "tab-and-newline"),
            ("back\\slash", "back-slash"),
            ("trailing.", "trailing"),
        ],
    )
    def test_cleanup(self, raw, expected):
        assert sanitize_branch_name(raw) == expected

    @pytest.mark.parametrize("raw", ["", "///", "..", "-"])
    def test_fallback(self, raw):
        assert sanitize_branch_name(raw) == FALLBACK_BRANCH_NAME
