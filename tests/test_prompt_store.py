"""Tests for the versioned prompt store."""

import random

import pytest

from crm_audit.errors import NotFoundError
from crm_audit.models.analysis import PromptSettings, PromptType


def _active(store, prompt_type):
    return [p for p in store.list_history(prompt_type) if p.is_active]


class TestCreate:
    def test_first_prompt_is_version_one_and_active(self, prompt_store):
        prompt = prompt_store.create("Resume: {history}", created_by="ana")
        assert prompt.version == 1
        assert prompt.is_active
        assert prompt.prompt_type == PromptType.SETTER
        assert prompt.created_by == "ana"

    def test_new_version_deactivates_previous(self, prompt_store):
        first = prompt_store.create("v1")
        second = prompt_store.create("v2")
        assert second.version == 2
        assert prompt_store.get(first.id).is_active is False
        assert prompt_store.get_active(PromptType.SETTER).id == second.id

    def test_versions_are_independent_per_type(self, prompt_store):
        prompt_store.create("s1", prompt_type="setter")
        prompt_store.create("s2", prompt_type="setter")
        closer = prompt_store.create("c1", prompt_type="closer")
        assert closer.version == 1
        assert prompt_store.get_active("setter").version == 2
        assert prompt_store.get_active("closer").id == closer.id

    def test_settings_round_trip_with_camel_case_keys(self, prompt_store):
        settings = PromptSettings.model_validate(
            {"includeContactInfo": False, "includeSMS": False, "language": "en", "useTools": True}
        )
        prompt = prompt_store.create("p", settings=settings)
        stored = prompt_store.get(prompt.id).settings
        assert stored.include_contact_info is False
        assert stored.include_sms is False
        assert stored.include_whatsapp is True
        assert stored.language == "en"
        assert stored.use_tools is True

    def test_versions_are_not_reused_after_delete(self, prompt_store):
        prompt_store.create("v1")
        latest = prompt_store.create("v2")
        prompt_store.delete(latest.id)
        assert prompt_store.create("v3").version == 3


class TestRestore:
    def test_restore_activates_older_version(self, prompt_store):
        first = prompt_store.create("v1")
        prompt_store.create("v2")

        restored = prompt_store.restore(first.id)

        assert restored.is_active
        assert [p.id for p in _active(prompt_store, "setter")] == [first.id]

    def test_restore_leaves_other_type_alone(self, prompt_store):
        setter = prompt_store.create("s1", prompt_type="setter")
        closer = prompt_store.create("c1", prompt_type="closer")
        prompt_store.create("s2", prompt_type="setter")

        prompt_store.restore(setter.id)

        assert prompt_store.get_active("closer").id == closer.id

    def test_restore_unknown_id(self, prompt_store):
        with pytest.raises(NotFoundError):
            prompt_store.restore("missing")


class TestDelete:
    def test_deleting_active_promotes_highest_remaining(self, prompt_store):
        prompt_store.create("v1")
        second = prompt_store.create("v2")
        third = prompt_store.create("v3")

        activated = prompt_store.delete(third.id)

        assert activated.id == second.id
        assert prompt_store.get_active("setter").version == 2

    def test_deleting_inactive_changes_nothing(self, prompt_store):
        first = prompt_store.create("v1")
        second = prompt_store.create("v2")

        assert prompt_store.delete(first.id) is None
        assert prompt_store.get_active("setter").id == second.id

    def test_deleting_last_prompt(self, prompt_store):
        only = prompt_store.create("v1")
        assert prompt_store.delete(only.id) is None
        assert prompt_store.get_active("setter") is None

    def test_delete_unknown_id(self, prompt_store):
        with pytest.raises(NotFoundError):
            prompt_store.delete("missing")


class TestReads:
    def test_history_is_newest_first(self, prompt_store):
        for i in range(3):
            prompt_store.create(f"v{i + 1}")
        assert [p.version for p in prompt_store.list_history("setter")] == [3, 2, 1]

    def test_history_without_type_lists_everything(self, prompt_store):
        prompt_store.create("s1", prompt_type="setter")
        prompt_store.create("c1", prompt_type="closer")
        assert len(prompt_store.list_history()) == 2

    def test_no_active_prompt(self, prompt_store):
        assert prompt_store.get_active("closer") is None


@pytest.mark.parametrize("seed", range(10))
def test_random_operations_keep_one_active_prompt_per_type(prompt_store, seed):
    """After any sequence of create/restore/delete, each type has at most one active prompt
    and new versions are always one above the highest ever issued for that type."""
    rng = random.Random(seed)
    highest = {"setter": 0, "closer": 0}

    for _ in range(40):
        operation = rng.choice(["create", "create", "restore", "delete"])
        history = prompt_store.list_history()

        if operation == "create" or not history:
            prompt_type = rng.choice(["setter", "closer"])
            prompt = prompt_store.create(f"content {rng.random()}", prompt_type=prompt_type)
            assert prompt.version == highest[prompt_type] + 1
            highest[prompt_type] = prompt.version
        elif operation == "restore":
            prompt_store.restore(rng.choice(history).id)
        else:
            victim = rng.choice(history)
            remaining = [p for p in history if p.prompt_type == victim.prompt_type and p.id != victim.id]
            activated = prompt_store.delete(victim.id)
            if victim.is_active and remaining:
                assert activated.version == max(p.version for p in remaining)

        for prompt_type in ("setter", "closer"):
            assert len(_active(prompt_store, prompt_type)) <= 1
