import re

import pytest

import ib_policy_sync as ibs


def _segments(*names):
    return [ibs.Segment(name=n) for n in names]


def _names(segments):
    return [s.name for s in segments]


def test_filter_segments_drops_matches_and_sorts():
    segments = _segments("corporate-A", "corporate-B", "sales", "hr")
    assert _names(ibs.filter_segments(segments, "corporate*")) == ["hr", "sales"]


def test_filter_segments_default_pattern_is_case_insensitive():
    segments = _segments("Corporate-HQ", "CORPORATE-SALES", "Engineering", "finance")
    filtered = ibs.filter_segments(segments, ibs.DEFAULT_EXCLUDE_PATTERN)
    assert _names(filtered) == ["Engineering", "finance"]


def test_filtered_set_never_contains_pattern_matches():
    segments = _segments("ops-east", "ops-west", "legal", "hr-payroll", "hr", "legal-eu")
    pattern = "legal|east"
    regex = re.compile(pattern, re.IGNORECASE)
    filtered = ibs.filter_segments(segments, pattern)
    assert filtered
    assert not any(regex.search(s.name) for s in filtered)


def test_filter_segments_malformed_pattern_is_configuration_error():
    with pytest.raises(ibs.ConfigurationError) as exc:
        ibs.filter_segments(_segments("hr"), "corporate(")
    assert "corporate(" in str(exc.value)


@pytest.mark.parametrize("name,prefix", [
    ("hr", "hr"),
    ("hr-payroll", "hr"),
    ("sales-emea-north", "sales"),
    ("-odd", ""),
])
def test_segment_prefix(name, prefix):
    assert ibs.segment_prefix(name) == prefix


def test_block_list_scenario():
    filtered = ibs.filter_segments(_segments("corporate-A", "corporate-B", "sales", "hr"), "corporate*")
    hr, sales = filtered
    assert ibs.compute_blocked_segments(hr, filtered) == ["sales"]
    assert ibs.compute_blocked_segments(sales, filtered) == ["hr"]


def test_block_list_leaves_prefix_group_unblocked():
    segments = _segments("eng-core", "eng-web", "finance-ap", "finance-ar", "legal")
    blocked = ibs.compute_blocked_segments(segments[0], segments)
    assert blocked == ["finance-ap", "finance-ar", "legal"]


def test_block_list_never_includes_self_or_own_group():
    segments = _segments("eng-core", "eng-web", "finance-ap", "finance-ar", "legal", "ops")
    for segment in segments:
        blocked = ibs.compute_blocked_segments(segment, segments)
        prefix = ibs.segment_prefix(segment.name)
        assert segment.name not in blocked
        assert not any(ibs.segment_prefix(b) == prefix for b in blocked)


def test_block_lists_are_symmetric_across_groups():
    segments = _segments("eng-core", "eng-web", "eng", "engineering-ops", "finance-ap",
                         "legal", "ops", "hr", "shred-team")
    blocked = {s.name: set(ibs.compute_blocked_segments(s, segments)) for s in segments}
    for a in segments:
        for b in segments:
            if ibs.segment_prefix(a.name) != ibs.segment_prefix(b.name):
                assert b.name in blocked[a.name]
                assert a.name in blocked[b.name]


def test_block_list_prefix_match_ignores_case():
    segments = _segments("HR-Payroll", "hr-benefits", "sales")
    assert ibs.compute_blocked_segments(segments[0], segments) == ["sales"]


def test_block_list_prefix_must_match_whole_group():
    segments = _segments("hr", "shred-team", "eng", "engineering-ops")
    assert ibs.compute_blocked_segments(segments[0], segments) == ["shred-team", "eng", "engineering-ops"]
    assert ibs.compute_blocked_segments(segments[1], segments) == ["hr", "eng", "engineering-ops"]
    assert ibs.compute_blocked_segments(segments[2], segments) == ["hr", "shred-team", "engineering-ops"]
    assert ibs.compute_blocked_segments(segments[3], segments) == ["hr", "shred-team", "eng"]


def test_block_list_excludes_self_regardless_of_case():
    segments = _segments("Sales", "hr")
    assert ibs.compute_blocked_segments(ibs.Segment("SALES"), segments) == ["hr"]


def test_policy_is_current_compares_state_and_block_list():
    policy = ibs.Policy(identity="1", assigned_segment="hr", segments_blocked=["Sales", "eng"], state="Active")
    assert ibs.policy_is_current(policy, ["eng", "sales"])
    assert not ibs.policy_is_current(policy, ["eng"])
    policy.state = "Inactive"
    assert not ibs.policy_is_current(policy, ["eng", "sales"])


def test_find_policy_matches_assigned_segment_case_insensitively():
    policies = [
        ibs.Policy(identity="1", assigned_segment="Sales"),
        ibs.Policy(identity="2", assigned_segment="HR"),
    ]
    assert ibs.find_policy(policies, ibs.Segment("hr")).identity == "2"
    assert ibs.find_policy(policies, ibs.Segment("legal")) is None
