"""
Tests for the Membership Flattener.
"""

import logging

from iam_engine.engine import flatten_memberships
from iam_engine.models import Group, MemberKind

USER_A = "aaaaaaaa-0000-0000-0000-000000000001"
USER_A_TWIN = "aaaaaaaa-ffff-0000-0000-000000000002"
USER_B = "bbbbbbbb-0000-0000-0000-000000000003"


class TestFlattenMemberships:
    """Test cases for flatten_memberships."""

    def test_application_membership_key(self):
        groups = {"admins": Group(name="admins", application_keys=["terraform"])}

        memberships = flatten_memberships(groups)

        assert list(memberships) == ["admins-app-terraform"]
        record = memberships["admins-app-terraform"]
        assert record.group_key == "admins"
        assert record.member_kind == MemberKind.APPLICATION
        assert record.member == "terraform"

    def test_user_membership_key_uses_id_prefix(self):
        groups = {"admins": Group(name="admins", user_ids=[USER_B, "alice"])}

        memberships = flatten_memberships(groups)

        assert sorted(memberships) == ["admins-user-alice", "admins-user-bbbbbbbb"]
        assert memberships["admins-user-bbbbbbbb"].member == USER_B
        assert memberships["admins-user-bbbbbbbb"].member_kind == MemberKind.USER

    def test_external_membership_emits_nothing(self):
        groups = {
            "admins": Group(name="admins", application_keys=["terraform"], user_ids=[USER_A],
                            external_membership=True),
            "ops": Group(name="ops", application_keys=["terraform"]),
        }

        memberships = flatten_memberships(groups)

        assert list(memberships) == ["ops-app-terraform"]

    def test_duplicates_collapse(self):
        groups = {"admins": Group(name="admins", application_keys=["terraform", "terraform"],
                                  user_ids=[USER_A, USER_A])}

        memberships = flatten_memberships(groups)

        assert sorted(memberships) == ["admins-app-terraform", "admins-user-aaaaaaaa"]

    def test_flattening_is_idempotent(self):
        groups = {
            "admins": Group(name="admins", application_keys=["terraform"], user_ids=[USER_A]),
            "ops": Group(name="ops", user_ids=[USER_B]),
        }

        first = flatten_memberships(groups)
        second = flatten_memberships(groups)

        assert set(first) == set(second)
        assert first == second

    def test_prefix_collision_keeps_first_user(self, caplog):
        groups = {"admins": Group(name="admins", user_ids=[USER_A, USER_A_TWIN])}

        with caplog.at_level(logging.WARNING):
            memberships = flatten_memberships(groups)

        assert list(memberships) == ["admins-user-aaaaaaaa"]
        assert memberships["admins-user-aaaaaaaa"].member == USER_A
        assert "admins-user-aaaaaaaa" in caplog.text

    def test_same_user_in_two_groups(self):
        groups = {
            "admins": Group(name="admins", user_ids=[USER_A]),
            "ops": Group(name="ops", user_ids=[USER_A]),
        }

        assert sorted(flatten_memberships(groups)) == ["admins-user-aaaaaaaa", "ops-user-aaaaaaaa"]
