import pytest

from moderation_gateway.verdict import (
    CODE_DIMENSIONS,
    calculate_scores,
    contains_unsafe,
    parse_verdict,
    parse_violations,
)


def test_unsafe_with_two_codes_scores_both_dimensions():
    verdict = parse_verdict("unsafe\nS1,S2")
    assert verdict.violations == ["S1", "S2"]
    assert verdict.is_safe is False
    assert calculate_scores(verdict.violations) == {
        "threat_of_harm": 1.0,
        "commercial_solicitation": 1.0,
    }


def test_s8_counts_as_commercial_solicitation():
    verdict = parse_verdict("unsafe\nS8")
    assert calculate_scores(verdict.violations) == {
        "threat_of_harm": 0.0,
        "commercial_solicitation": 1.0,
    }


def test_single_line_safe():
    verdict = parse_verdict("safe")
    assert verdict.violations == []
    assert verdict.is_safe is True
    assert calculate_scores(verdict.violations) == {
        "threat_of_harm": 0.0,
        "commercial_solicitation": 0.0,
    }


def test_single_line_unsafe_has_no_violations():
    verdict = parse_verdict("unsafe")
    assert verdict.violations == []
    assert verdict.is_safe is False
    assert set(calculate_scores(verdict.violations).values()) == {0.0}


def test_empty_output_is_safe():
    verdict = parse_verdict("")
    assert verdict.is_safe is True
    assert verdict.violations == []


@pytest.mark.parametrize("txt", [
    "UNSAFE\nS1",
    "The content is Unsafe.",
    "safe\nactually unsafe",
    "Verdict:\n  unsafe  \nS2",
])
def test_unsafe_anywhere_any_case_flips_safety(txt):
    assert contains_unsafe(txt)
    assert parse_verdict(txt).is_safe is False


@pytest.mark.parametrize("txt", ["safe", "SAFE", "safe\n", "All good here\nnothing to flag"])
def test_text_without_unsafe_is_safe(txt):
    assert parse_verdict(txt).is_safe is True


def test_codes_are_trimmed():
    assert parse_violations("unsafe\n  S1 , S8 \nextra line") == ["S1", "S8"]


def test_only_second_line_is_read():
    verdict = parse_verdict("unsafe\nS3\nS1")
    assert verdict.violations == ["S3"]
    assert calculate_scores(verdict.violations)["threat_of_harm"] == 0.0


def test_unknown_codes_are_ignored_and_scores_never_exceed_one():
    scores = calculate_scores(["S2", "S8", "S2", "S13", ""])
    assert scores == {"threat_of_harm": 0.0, "commercial_solicitation": 1.0}


def test_code_table_is_extensible_without_touching_the_parser():
    table = dict(CODE_DIMENSIONS, S10="hate_speech")
    scores = calculate_scores(
        ["S10", "S1"],
        table=table,
        dimensions=("threat_of_harm", "commercial_solicitation", "hate_speech"),
    )
    assert scores == {"threat_of_harm": 1.0, "commercial_solicitation": 0.0, "hate_speech": 1.0}
