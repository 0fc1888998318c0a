"""Ability evaluation: wildcard resolution and role-derived grants."""

from itertools import chain, combinations

import pytest

from gatekeep.service.abilities import (
    ALL,
    MANAGE,
    Ability,
    AbilityEngine,
    ability_from_strings,
    build_ability,
)
from gatekeep.storage.models import Permission

MATCHING = [("create", "product"), (MANAGE, "product"), ("create", ALL), (MANAGE, ALL)]
UNRELATED = [("read", "product"), ("create", "order"), ("delete", ALL)]


def _power_set(items):
    return chain.from_iterable(combinations(items, n) for n in range(len(items) + 1))


class TestAbilityTruthTable:
    @pytest.mark.parametrize("grants", list(_power_set(MATCHING)))
    def test_create_product_matches_any_covering_grant(self, grants):
        ability = Ability(frozenset(grants) | frozenset(UNRELATED))
        assert ability.can("create", "product") is bool(grants)
        assert ability.cannot("create", "product") is not bool(grants)

    def test_unrelated_grants_never_match(self):
        ability = Ability(frozenset(UNRELATED))
        assert not ability.can("create", "product")
        assert not ability.can("update", "product")

    def test_lookup_is_case_insensitive(self):
        ability = Ability(frozenset({("read", "audit-log")}))
        assert ability.can("READ", "Audit-Log")

    def test_empty_ability_denies_everything(self):
        assert not Ability().can("read", "anything")
        assert Ability().rules == []


class TestGrantParsing:
    def test_wildcards_map_to_manage_and_all(self):
        ability = ability_from_strings(["*:*"])
        assert ability.grants == frozenset({(MANAGE, ALL)})
        assert ability.can("delete", "role")

    def test_resource_wildcard_action(self):
        ability = ability_from_strings(["product:*"])
        assert ability.can("delete", "product")
        assert not ability.can("delete", "order")

    def test_manage_literal_is_equivalent_to_wildcard(self):
        assert ability_from_strings(["product:manage"]) == ability_from_strings(["product:*"])

    @pytest.mark.parametrize("bad", ["product", ":read", "product:", ""])
    def test_malformed_strings(self, bad):
        with pytest.raises(ValueError):
            ability_from_strings([bad])

    def test_build_from_permission_records(self):
        perms = [
            Permission(id="1", name="audit_read", resource="audit-log", action="read"),
            Permission(id="2", name="everything", resource="*", action="*"),
        ]
        ability = build_ability(perms)
        assert ("read", "audit-log") in ability.grants
        assert (MANAGE, ALL) in ability.grants

    def test_missing_reports_unmet_requirements(self):
        ability = ability_from_strings(["role:read", "permission:*"])
        assert ability.missing(["role:read", "permission:delete"]) == []
        assert ability.missing(["role:read", "role:delete", "audit-log:read"]) == [
            "role:delete",
            "audit-log:read",
        ]

    def test_rules_are_sorted_action_subject_pairs(self):
        ability = ability_from_strings(["role:read", "audit-log:read"])
        assert ability.rules == [
            {"action": "read", "subject": "audit-log"},
            {"action": "read", "subject": "role"},
        ]


class TestAbilityEngine:
    def test_resolves_grants_through_role(self, runtime, make_user):
        user = make_user("auditor@example.com", role="AUDITOR", permissions=["audit-log:read"])
        engine = AbilityEngine(runtime.store)

        assert engine.can(user.id, "read", "audit-log")
        assert not engine.can(user.id, "delete", "audit-log")
        assert engine.role_name(user.id) == "AUDITOR"

    def test_permission_change_applies_immediately(self, runtime, make_user):
        user = make_user("auditor@example.com", role="AUDITOR", permissions=["audit-log:read"])
        engine = AbilityEngine(runtime.store)
        assert engine.can(user.id, "read", "audit-log")

        runtime.store.set_role_permissions(user.role_id, [])
        assert not engine.can(user.id, "read", "audit-log")

    def test_user_without_role_has_no_grants(self, runtime):
        user = runtime.store.create_user("norole@example.com", runtime.hasher.hash("x"))
        engine = AbilityEngine(runtime.store)
        assert engine.for_user(user.id) == Ability()
        assert engine.role_name(user.id) is None

    def test_unknown_user(self, runtime):
        assert AbilityEngine(runtime.store).for_user("missing") == Ability()
