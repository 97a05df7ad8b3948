from __future__ import annotations

import pytest

from casesearch.pattern_queries import PersonCriterion


def _index_cases(services, tenant_id: str = "tenant_a") -> None:
    services.reindex.reindex_tenant(tenant_id, "cases", mode="sync")


def _seed_pattern_corpus(seed, tenant_id: str = "tenant_a") -> None:
    for pid in ["p1", "p2", "p3"]:
        seed.person(tenant_id, pid)
    seed.case(tenant_id, "c1", created_at="2025-01-01T00:00:00+00:00")
    seed.case(tenant_id, "c2", created_at="2025-01-02T00:00:00+00:00")
    seed.case(tenant_id, "c3", created_at="2025-01-03T00:00:00+00:00")
    # c1: P1 SUBJECT, P2 WITNESS
    seed.person_case(tenant_id, "p1", "c1", "SUBJECT")
    seed.person_case(tenant_id, "p2", "c1", "WITNESS")
    # c2: P1 WITNESS, P2 SUBJECT
    seed.person_case(tenant_id, "p1", "c2", "WITNESS")
    seed.person_case(tenant_id, "p2", "c2", "SUBJECT")
    # c3: P1 SUBJECT (substantiated), P3 WITNESS
    seed.person_case(tenant_id, "p1", "c3", "SUBJECT", evidentiary_status="SUBSTANTIATED")
    seed.person_case(tenant_id, "p3", "c3", "WITNESS")


def _ids(page: dict) -> list[str]:
    return sorted(item["case_id"] for item in page["items"])


def test_joint_query_requires_labels_on_the_same_entry(services, seed):
    _seed_pattern_corpus(seed)
    _index_cases(services)
    patterns = services.patterns

    subject_and_witness = [PersonCriterion("p1", ("SUBJECT",)), PersonCriterion("p2", ("WITNESS",))]
    assert _ids(patterns.find_cases_with_persons("tenant_a", subject_and_witness)) == ["c1"]

    swapped = [PersonCriterion("p1", ("WITNESS",)), PersonCriterion("p2", ("SUBJECT",))]
    assert _ids(patterns.find_cases_with_persons("tenant_a", swapped)) == ["c2"]

    # the flattened arrays cannot tell the two cases apart
    assert _ids(patterns.find_cases_with_all_persons("tenant_a", ["p1", "p2"])) == ["c1", "c2"]


def test_joint_query_scenario_returns_only_matching_case(services, seed):
    for pid in ["p1", "p2", "p3"]:
        seed.person("tenant_a", pid)
    seed.case("tenant_a", "c1")
    seed.case("tenant_a", "c2")
    seed.person_case("tenant_a", "p1", "c1", "SUBJECT")
    seed.person_case("tenant_a", "p3", "c1", "WITNESS")
    seed.person_case("tenant_a", "p1", "c2", "SUBJECT")
    seed.person_case("tenant_a", "p2", "c2", "WITNESS")
    _index_cases(services)

    page = services.patterns.find_cases_with_persons(
        "tenant_a",
        [PersonCriterion("p1", ("SUBJECT",)), PersonCriterion("p2", ("WITNESS",))],
    )
    assert page["total"] == 1
    assert _ids(page) == ["c2"]


def test_criterion_without_labels_matches_any_role(services, seed):
    _seed_pattern_corpus(seed)
    _index_cases(services)
    page = services.patterns.find_cases_with_persons("tenant_a", [PersonCriterion("p3")])
    assert _ids(page) == ["c3"]


def test_joint_query_validates_input(services):
    with pytest.raises(ValueError, match="at least one"):
        services.patterns.find_cases_with_persons("tenant_a", [])
    with pytest.raises(ValueError, match="unknown person-case labels"):
        services.patterns.find_cases_with_persons("tenant_a", [PersonCriterion("p1", ("VILLAIN",))])
    with pytest.raises(ValueError, match="limit"):
        services.patterns.find_cases_with_persons("tenant_a", [PersonCriterion("p1")], limit=0)


def test_cases_by_person_pages_newest_first(services, seed):
    _seed_pattern_corpus(seed)
    _index_cases(services)
    page = services.patterns.find_cases_by_person("tenant_a", "p1", limit=2)
    assert page["total"] == 3
    assert [item["case_id"] for item in page["items"]] == ["c3", "c2"]
    rest = services.patterns.find_cases_by_person("tenant_a", "p1", limit=2, offset=2)
    assert [item["case_id"] for item in rest["items"]] == ["c1"]


def test_involvement_summary_groups_by_label_then_status(services, seed):
    _seed_pattern_corpus(seed)
    _index_cases(services)
    summary = services.patterns.person_involvement_summary("tenant_a", "p1")
    assert summary["total_cases"] == 3
    by_label = {b["label"]: b for b in summary["by_label"]}
    assert by_label["SUBJECT"]["case_count"] == 2
    assert by_label["WITNESS"]["case_count"] == 1
    assert by_label["SUBJECT"]["by_status"] == [
        {"status": "ACTIVE", "case_count": 1},
        {"status": "SUBSTANTIATED", "case_count": 1},
    ]
    assert summary["by_label"][0]["label"] == "SUBJECT"


def test_repeat_involvements_apply_minimum_case_count(services, seed):
    _seed_pattern_corpus(seed)
    _index_cases(services)
    repeat = services.patterns.find_repeat_involvements("tenant_a", "SUBJECT", min_count=2)
    assert repeat == [{"person_id": "p1", "label": "SUBJECT", "case_count": 2}]
    assert services.patterns.find_repeat_involvements("tenant_a", "WITNESS", min_count=3) == []
    with pytest.raises(ValueError, match="unknown person-case label"):
        services.patterns.find_repeat_involvements("tenant_a", "HERO")


def test_reporter_history_is_answered_from_the_relational_store(services, seed):
    seed.person("tenant_a", "p1")
    for rid in ["r1", "r2", "r3"]:
        seed.record("tenant_a", rid)
        seed.person_record("tenant_a", "p1", rid, "REPORTER")
    seed.record("tenant_a", "r4")
    seed.person_record("tenant_a", "p1", "r4", "WITNESS_MENTIONED")

    class NoSearch:
        def search(self, index, body):
            raise AssertionError("reporter history must not query the index")

    services.patterns.engine = NoSearch()
    history = services.patterns.reporter_history("tenant_a", "p1", exclude_record_id="r3")
    assert history == {
        "person_id": "p1",
        "previous_report_count": 2,
        "show_badge": True,
        "badge_text": "2 previous reports",
    }
    assert services.patterns.reporter_history("tenant_b", "p1")["show_badge"] is False


def test_related_cases_include_both_directions(services, seed):
    for cid in ["c1", "c2", "c3"]:
        seed.case("tenant_a", cid)
    seed.case_case("tenant_a", "c1", "c2", "PARENT")
    seed.case_case("tenant_a", "c3", "c1", "FOLLOW_UP_TO")
    related = services.patterns.related_cases("tenant_a", "c1")
    assert [(r["case_id"], r["label"], r["direction"]) for r in related] == [
        ("c2", "PARENT", "outgoing"),
        ("c3", "FOLLOW_UP_TO", "incoming"),
    ]


def test_query_engine_failure_returns_empty_result(services, caplog):
    class BrokenEngine:
        def search(self, index, body):
            raise RuntimeError("cluster red")

    services.patterns.engine = BrokenEngine()
    page = services.patterns.find_cases_with_persons("tenant_a", [PersonCriterion("p1")])
    assert page == {"total": 0, "items": [], "limit": 20, "offset": 0}
    assert services.patterns.person_involvement_summary("tenant_a", "p1")["by_label"] == []
    assert services.patterns.find_repeat_involvements("tenant_a", "SUBJECT") == []
    assert "pattern_query_failed" in caplog.text


def test_queries_never_cross_tenants_even_with_colliding_ids(services, seed):
    _seed_pattern_corpus(seed, "tenant_a")
    _seed_pattern_corpus(seed, "tenant_b")
    seed.case("tenant_b", "c9")
    seed.person_case("tenant_b", "p1", "c9", "SUBJECT")
    _index_cases(services, "tenant_a")
    _index_cases(services, "tenant_b")

    page_a = services.patterns.find_cases_by_person("tenant_a", "p1")
    page_b = services.patterns.find_cases_by_person("tenant_b", "p1")
    assert _ids(page_a) == ["c1", "c2", "c3"]
    assert _ids(page_b) == ["c1", "c2", "c3", "c9"]

    searched: list[str] = []
    real_search = services.engine.search

    def spy(index, body):
        searched.append(index)
        return real_search(index, body)

    services.patterns.engine.search = spy
    services.patterns.person_involvement_summary("tenant_a", "p1")
    services.patterns.find_repeat_involvements("tenant_a", "SUBJECT")
    assert searched == ["org_tenant_a_cases", "org_tenant_a_cases"]
