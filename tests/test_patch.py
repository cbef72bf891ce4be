import pytest

from clubbilling.core.errors import ValidationError
from clubbilling.db.models import Club
from clubbilling.db.patch import DELETE_FIELD, Patch


def test_apply_sets_and_deletes_fields():
    club = Club(id="c1", upgrade_reason="members_threshold", billing_tier="tier_a")
    Patch(billing_tier="tier_b", upgrade_reason=DELETE_FIELD).apply_to(club)
    assert club.billing_tier == "tier_b"
    assert club.upgrade_reason is None


def test_merge_prefers_later_values():
    merged = Patch(a=1, b=2).merge({"b": 3, "c": DELETE_FIELD})
    assert dict(merged) == {"a": 1, "b": 3, "c": DELETE_FIELD}


@pytest.mark.parametrize("path", ["usage.streak", "a/b", "", "   "])
def test_rejects_illegal_paths(path):
    with pytest.raises(ValidationError):
        Patch({path: 1}).validate()


def test_unknown_field_fails_before_anything_is_written():
    club = Club(id="c1", billing_tier="tier_a")
    with pytest.raises(ValidationError):
        Patch(billing_tier="tier_b", no_such_field=1).apply_to(club)
    assert club.billing_tier == "tier_a"


def test_delete_field_is_singleton_and_falsy():
    assert DELETE_FIELD is type(DELETE_FIELD)()
    assert not DELETE_FIELD
    assert repr(DELETE_FIELD) == "DELETE_FIELD"
