import pytest
from pydantic import ValidationError

from growthdesk.schemas.email_sequence import (
    HasTags,
    LacksTags,
    MustHaveClicked,
    MustHaveOpened,
    MustNotHaveOpened,
    dump_conditions,
    parse_conditions,
)
from growthdesk.services.sequence_conditions import EngagementSnapshot, condition_holds, evaluate

OPENED = EngagementSnapshot(opened=True, tags=frozenset({"trial"}))
CLICKED = EngagementSnapshot(opened=True, clicked=True)
IGNORED = EngagementSnapshot(tags=frozenset({"trial", "enterprise"}))


class TestConditionHolds:

    @pytest.mark.parametrize("condition,snapshot,expected", [
        (MustHaveOpened(), OPENED, True),
        (MustHaveOpened(), IGNORED, False),
        (MustHaveClicked(), CLICKED, True),
        (MustHaveClicked(), OPENED, False),
        (MustNotHaveOpened(), IGNORED, True),
        (MustNotHaveOpened(), OPENED, False),
        (HasTags(tags=["trial"]), OPENED, True),
        (HasTags(tags=["trial", "enterprise"]), OPENED, False),
        (HasTags(tags=["trial", "enterprise"]), IGNORED, True),
        (LacksTags(tags=["enterprise"]), OPENED, True),
        (LacksTags(tags=["enterprise", "churned"]), IGNORED, False),
    ])
    def test_variants(self, condition, snapshot, expected):
        assert condition_holds(condition, snapshot) is expected

    def test_unknown_condition(self):
        with pytest.raises(TypeError):
            condition_holds(object(), OPENED)


class TestEvaluate:

    def test_empty_list_passes(self):
        assert evaluate([], EngagementSnapshot.empty())

    def test_all_must_hold(self):
        conditions = [MustHaveOpened(), HasTags(tags=["trial"])]
        assert evaluate(conditions, OPENED)
        assert not evaluate(conditions + [MustHaveClicked()], OPENED)

    def test_first_step_snapshot_only_knows_tags(self):
        snapshot = EngagementSnapshot.empty(["vip"])
        assert not snapshot.opened
        assert evaluate([HasTags(tags=["vip"]), MustNotHaveOpened()], snapshot)
        assert not evaluate([MustHaveOpened()], snapshot)


class TestStoredConditions:

    def test_parse_stored_json(self):
        conditions = parse_conditions([
            {"type": "must_open"},
            {"type": "lacks_tags", "tags": ["churned"]},
        ])
        assert conditions == [MustHaveOpened(), LacksTags(tags=["churned"])]

    def test_dump_is_plain_json(self):
        assert dump_conditions([HasTags(tags=["a", "b"]), MustHaveClicked()]) == [
            {"type": "has_tags", "tags": ["a", "b"]},
            {"type": "must_click"},
        ]

    @pytest.mark.parametrize("raw", [None, []])
    def test_missing_is_empty(self, raw):
        assert parse_conditions(raw) == []

    @pytest.mark.parametrize("raw", [
        [{"type": "must_reply"}],
        [{"type": "has_tags", "tags": []}],
        [{"tags": ["x"]}],
    ])
    def test_rejects_unknown_shapes(self, raw):
        with pytest.raises(ValidationError):
            parse_conditions(raw)
