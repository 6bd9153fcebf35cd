"""Tests for invalidation cascades and role-based invalidation."""

import pytest

from therasync import keys
from therasync.cache.invalidation import InvalidationManager, Role
from therasync.cache.policy import policy_for_key


@pytest.fixture
def manager(store):
    return InvalidationManager(store)


def _seed(store, *key_list):
    for key in key_list:
        store.set(key, {"key": list(map(str, key))}, policy_for_key(key))


def _stale(store, clock):
    return {e.key for e in store.all() if e.is_stale(clock.now())}


class TestCascade:
    def test_entity_change_marks_list_and_scoped_keys(self, store, clock, manager):
        _seed(
            store,
            keys.clients(),
            keys.clients({"status": "active"}),
            keys.client("c1"),
            keys.client_sessions("c1"),
            keys.client("c2"),
            keys.therapists(),
        )
        marked = manager.invalidate("client", "c1")
        assert marked == 4
        assert _stale(store, clock) == {
            keys.clients(),
            keys.clients({"status": "active"}),
            keys.client("c1"),
            keys.client_sessions("c1"),
        }

    def test_without_id_only_lists(self, store, clock, manager):
        _seed(store, keys.sessions(), keys.session("s1"), keys.upcoming_sessions())
        manager.invalidate("session")
        assert _stale(store, clock) == {keys.sessions(), keys.upcoming_sessions()}

    def test_owner_references(self, store, clock, manager):
        _seed(
            store,
            keys.session("s1"),
            keys.client_sessions("c1"),
            keys.therapist_sessions("t1"),
            keys.client_sessions("c2"),
        )
        manager.invalidate("session", "s1", related={"clientId": "c1", "therapistId": "t1"})
        assert _stale(store, clock) == {
            keys.session("s1"),
            keys.client_sessions("c1"),
            keys.therapist_sessions("t1"),
        }

    def test_does_not_remove_data(self, store, manager):
        _seed(store, keys.clients())
        manager.invalidate("client")
        assert store.get(keys.clients()).data is not None

    def test_exclude(self, store, clock, manager):
        _seed(store, keys.clients(), keys.client("c1"))
        manager.invalidate("client", "c1", exclude=(keys.client("c1"),))
        assert _stale(store, clock) == {keys.clients()}

    def test_clinic_edge(self, store, clock, manager):
        _seed(
            store,
            keys.clinics(),
            keys.clinic("k1"),
            keys.clinic_profile("k1"),
            keys.clinic_documents("k1"),
            keys.clinic_analytics("k1"),
            keys.clinic("k2"),
        )
        assert manager.invalidate("clinic", "k1") == 5
        assert keys.clinic("k2") not in _stale(store, clock)

    def test_assignment_edge(self, store, clock, manager):
        _seed(
            store,
            keys.assignments(),
            keys.assignment("a1"),
            keys.client_assignments("c1"),
            keys.therapist_assignments("t1"),
            keys.client_assignments("c2"),
        )
        manager.invalidate("assignment", "a1", related={"clientId": "c1", "therapistId": "t1"})
        assert _stale(store, clock) == {
            keys.assignments(),
            keys.assignment("a1"),
            keys.client_assignments("c1"),
            keys.therapist_assignments("t1"),
        }

    @pytest.mark.parametrize("entity_class", sorted(keys.ENTITY_RESOURCES))
    def test_every_entity_class_has_an_edge(self, store, manager, entity_class):
        _seed(store, keys.list_key(entity_class))
        assert manager.invalidate(entity_class, "x1") == 1

    def test_unknown_entity_class_falls_back_to_its_own_keys(self, store, clock, manager):
        _seed(store, ("invoices",), ("invoice",), ("invoice", "i1"), ("invoice", "i2"))
        assert manager.invalidate("invoice", "i1") == 2
        assert _stale(store, clock) == {("invoice",), ("invoice", "i1")}

    def test_monotonic_staleness(self, store, clock, manager):
        _seed(store, keys.clients())
        clock.advance(1000)
        manager.invalidate("client")
        first = store.get(keys.clients())
        clock.advance(5000)
        manager.invalidate("client")
        second = store.get(keys.clients())
        assert second.stale_at == first.stale_at
        assert second.is_stale(clock.now())

    def test_after_mutation(self, store, clock, manager):
        _seed(store, keys.clients(), keys.client("c1"), keys.client("c2"))
        manager.invalidate_after_mutation("delete", "client", "c1")
        assert keys.client("c1") not in store
        manager.invalidate_after_mutation("update", "client", "c2")
        assert _stale(store, clock) == {keys.clients(), keys.client("c2")}


class TestRoles:
    def test_role_spellings(self):
        assert Role("Administrator") is Role.ADMINISTRATOR
        assert Role("ClinicAdmin") is Role.CLINIC_ADMIN
        assert Role("clinic_admin") is Role.CLINIC_ADMIN
        assert Role("therapist") is Role.THERAPIST

    def test_administrator_invalidates_everything(self, store, clock, manager):
        _seed(store, keys.clients(), keys.reports(), keys.clinic("k1"))
        assert manager.invalidate_by_role("Administrator") == 3
        assert len(_stale(store, clock)) == 3

    def test_clinic_admin_scoped_to_clinic(self, store, clock, manager):
        _seed(store, keys.clinic_profile("k1"), keys.clinic("k2"), keys.therapists(), keys.reports())
        manager.invalidate_by_role(Role.CLINIC_ADMIN, "k1")
        assert _stale(store, clock) == {keys.clinic_profile("k1"), keys.therapists()}

    def test_clinic_admin_without_scope_is_noop(self, store, manager):
        _seed(store, keys.therapists())
        assert manager.invalidate_by_role("clinic_admin") == 0

    def test_therapist(self, store, clock, manager):
        _seed(store, keys.user(), keys.client("c1"), keys.reports())
        manager.invalidate_by_role("therapist")
        assert _stale(store, clock) == {keys.user(), keys.client("c1")}

    def test_unknown_role(self, store, manager):
        _seed(store, keys.user())
        assert manager.invalidate_by_role("janitor") == 0


class TestBatch:
    def test_batch_operations(self, store, clock, manager):
        _seed(store, keys.clients(), keys.session("s1"), keys.reports())
        store.touch(keys.reports())
        manager.batch([
            (keys.clients(), "invalidate"),
            (keys.sessions(), "remove"),
            (keys.reports(), "reset"),
        ])
        assert keys.clients() in _stale(store, clock)
        assert keys.session("s1") not in store
        assert keys.reports() not in store
        assert store.observer_count(keys.reports()) == 1

    def test_unknown_operation(self, manager):
        with pytest.raises(ValueError):
            manager.batch([(keys.clients(), "explode")])

    def test_refresh_stale(self, store, clock, manager):
        _seed(store, keys.unread_notifications(), keys.user())
        marked = manager.refresh_stale()
        assert marked == 1
        assert store.get(keys.unread_notifications()).invalidated
        assert not store.get(keys.user()).invalidated

    def test_invalidate_all(self, store, clock, manager):
        _seed(store, keys.user(), keys.reports())
        assert manager.invalidate_all() == 2
