from __future__ import annotations

PERSON_CASE_EVIDENTIARY_LABELS = frozenset({"REPORTER", "SUBJECT", "WITNESS"})
PERSON_CASE_ROLE_LABELS = frozenset(
    {
        "ASSIGNED_INVESTIGATOR",
        "APPROVER",
        "STAKEHOLDER",
        "MANAGER_OF_SUBJECT",
        "REVIEWER",
        "LEGAL_COUNSEL",
    }
)
PERSON_CASE_LABELS = PERSON_CASE_EVIDENTIARY_LABELS | PERSON_CASE_ROLE_LABELS

EVIDENTIARY_STATUSES = frozenset({"ACTIVE", "CLEARED", "SUBSTANTIATED", "WITHDRAWN"})

PERSON_RECORD_LABELS = frozenset({"REPORTER", "SUBJECT_MENTIONED", "WITNESS_MENTIONED"})

RECORD_CASE_TYPES = frozenset({"PRIMARY", "RELATED", "MERGED_FROM"})

CASE_CASE_LABELS = frozenset(
    {
        "PARENT",
        "CHILD",
        "SPLIT_FROM",
        "SPLIT_TO",
        "RELATED",
        "ESCALATED_TO",
        "SUPERSEDES",
        "FOLLOW_UP_TO",
        "MERGED_INTO",
    }
)


def is_role_label(label: str) -> bool:
    return label in PERSON_CASE_ROLE_LABELS
