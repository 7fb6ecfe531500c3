from ivoryoperator.utils.conditions import (
    CONDITION_FALSE,
    CONDITION_TRUE,
    Condition,
    find_condition,
    set_condition,
)


def _condition(status=CONDITION_TRUE, reason="Ready", message="", generation=1):
    return Condition(
        type="Ready",
        status=status,
        reason=reason,
        message=message,
        observed_generation=generation,
    )


def test_set_condition_appends_new_type():
    conditions = []
    assert set_condition(conditions, _condition()) is True
    assert conditions[0]["type"] == "Ready"
    assert conditions[0]["observedGeneration"] == 1
    assert conditions[0]["lastTransitionTime"]


def test_identical_condition_is_not_written_again():
    conditions = []
    set_condition(conditions, _condition())
    before = list(conditions)
    assert set_condition(conditions, _condition()) is False
    assert conditions == before


def test_transition_time_kept_when_status_unchanged():
    conditions = [
        {
            "type": "Ready",
            "status": CONDITION_TRUE,
            "reason": "Old",
            "message": "",
            "observedGeneration": 1,
            "lastTransitionTime": "2024-01-01T00:00:00Z",
        }
    ]
    assert set_condition(conditions, _condition(reason="New")) is True
    assert conditions[0]["reason"] == "New"
    assert conditions[0]["lastTransitionTime"] == "2024-01-01T00:00:00Z"


def test_transition_time_moves_when_status_changes():
    conditions = [
        {
            "type": "Ready",
            "status": CONDITION_TRUE,
            "reason": "Ready",
            "lastTransitionTime": "2024-01-01T00:00:00Z",
        }
    ]
    set_condition(conditions, _condition(status=CONDITION_FALSE, reason="Broken"))
    assert conditions[0]["status"] == CONDITION_FALSE
    assert conditions[0]["lastTransitionTime"] != "2024-01-01T00:00:00Z"
    assert len(conditions) == 1


def test_find_condition():
    conditions = []
    assert find_condition(conditions, "Ready") is None

    set_condition(conditions, _condition())
    found = find_condition(conditions, "Ready")
    assert found is not None and found.reason == "Ready"
    assert found.status == CONDITION_TRUE
