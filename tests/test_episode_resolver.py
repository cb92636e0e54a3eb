"""Tests for the reverse index and the shared episode resolution algorithm."""
from datetime import datetime, timedelta, timezone

import pytest

from episode_rpc.errors import (
    EpisodeNotFound,
    Forbidden,
    InvalidIdentifier,
    InvalidDiagnoses,
    InvalidStatusTransition,
    NotLinked,
    ResourceConflict,
    ResourceNotFound,
    StoreUnavailable,
)
from episode_rpc.models import (
    Approval,
    ClientContext,
    CodeableConcept,
    DiagnosticReport,
    EpisodeStatus,
    Period,
    Reference,
    ResourceKind,
    ServiceRequest,
)
from episode_rpc.resolver import EpisodeResolver
from episode_rpc.storage import Database, ResourceStore
from conftest import OTHER_ORG, OWNER_ORG, build_diagnosis, build_episode, new_id


OWNER = ClientContext(client_id=OWNER_ORG, client_type="MSP")
STRANGER = ClientContext(client_id=OTHER_ORG, client_type="MSP", employee_id="9f1c7e52-0a4b-4d6e-8c2f-3b5a7d9e1f20")
NHS = ClientContext(client_id=OTHER_ORG, client_type="NHS")


@pytest.fixture
def resolver(store, settings):
    return EpisodeResolver(store, settings)


def grant(store, episode, grantee: Reference, start=None, end=None, status="active"):
    now = datetime.now(timezone.utc)
    return store.create_approval(Approval(
        id=new_id(),
        episode=Reference(type="episode_of_care", id=episode.id),
        granted_to=grantee,
        granted_resources=[ResourceKind.CONDITION],
        period=Period(start=start or now - timedelta(days=1), end=end or now + timedelta(days=1)),
        status=status,
    ))


# ---------------------------------------------------------------------------
# Resolution across every resource kind
# ---------------------------------------------------------------------------

class TestResolutionPerKind:

    @pytest.mark.parametrize("kind", list(ResourceKind))
    def test_linked_resource_resolves_to_owner(self, resolver, store, episode, kind):
        rid = new_id()
        store.put_sub_resource(kind, rid, {"id": rid}, episode_id=episode.id)

        resolved = resolver.resolve(OWNER, kind, rid)

        assert resolved.id == episode.id
        assert resolved.status == EpisodeStatus.ACTIVE

    @pytest.mark.parametrize("kind", list(ResourceKind))
    def test_deleted_resource_is_not_found_not_unlinked(self, resolver, store, episode, kind):
        rid = new_id()
        store.put_sub_resource(kind, rid, {"id": rid}, episode_id=episode.id)
        assert store.delete_sub_resource(kind, rid) is True

        with pytest.raises(ResourceNotFound):
            resolver.resolve(OWNER, kind, rid)

    @pytest.mark.parametrize("kind", list(ResourceKind))
    def test_resource_without_back_reference_is_not_linked(self, resolver, store, kind):
        rid = new_id()
        store.put_sub_resource(kind, rid, {"id": rid}, episode_id=None)

        with pytest.raises(NotLinked):
            resolver.resolve(OWNER, kind, rid)

    def test_unknown_resource_is_not_found(self, resolver):
        with pytest.raises(ResourceNotFound):
            resolver.resolve(OWNER, ResourceKind.OBSERVATION, new_id())

    def test_kind_is_part_of_the_key(self, resolver, store, episode):
        rid = new_id()
        store.put_sub_resource(ResourceKind.OBSERVATION, rid, {}, episode_id=episode.id)
        with pytest.raises(ResourceNotFound):
            resolver.resolve(OWNER, ResourceKind.DEVICE, rid)

    @pytest.mark.parametrize("bad_id", ["", "abc", "12345", "g" * 36])
    def test_malformed_id_fails_fast(self, resolver, bad_id):
        with pytest.raises(InvalidIdentifier):
            resolver.resolve(OWNER, ResourceKind.CONDITION, bad_id)

    def test_kind_accepts_string_tag(self, resolver, store, episode):
        rid = new_id()
        store.put_sub_resource(ResourceKind.IMMUNIZATION, rid, {}, episode_id=episode.id)
        assert resolver.resolve(OWNER, "immunization", rid).id == episode.id


# ---------------------------------------------------------------------------
# Reverse index maintenance
# ---------------------------------------------------------------------------

class TestReverseIndex:

    def test_reparenting_moves_the_index_entry(self, resolver, store, episode):
        second = store.create_episode(build_episode())
        rid = new_id()
        store.put_sub_resource(ResourceKind.CONDITION, rid, {}, episode_id=episode.id)
        store.put_sub_resource(ResourceKind.CONDITION, rid, {}, episode_id=second.id)

        assert resolver.resolve(OWNER, ResourceKind.CONDITION, rid).id == second.id

    def test_clearing_back_reference_unlinks(self, resolver, store, episode):
        rid = new_id()
        store.put_sub_resource(ResourceKind.DEVICE, rid, {}, episode_id=episode.id)
        store.put_sub_resource(ResourceKind.DEVICE, rid, {}, episode_id=None)

        with pytest.raises(NotLinked):
            resolver.resolve(OWNER, ResourceKind.DEVICE, rid)

    def test_write_to_missing_episode_commits_nothing(self, store):
        rid = new_id()
        with pytest.raises(EpisodeNotFound):
            store.put_sub_resource(ResourceKind.OBSERVATION, rid, {"id": rid}, episode_id=new_id())

        assert store.lookup_episode_id(ResourceKind.OBSERVATION, rid) is None
        assert store.get_sub_resource(ResourceKind.OBSERVATION, rid) is None

    def test_delete_of_missing_resource_reports_false(self, store):
        assert store.delete_sub_resource(ResourceKind.DEVICE, new_id()) is False

    def test_diagnostic_report_back_reference_set_at_creation(self, resolver, store, episode):
        report = DiagnosticReport(
            id=new_id(), status="final",
            code=CodeableConcept(text="Blood panel"),
            episode=Reference(type="episode_of_care", id=episode.id),
        )
        store.put_diagnostic_report(report)

        assert resolver.resolve(OWNER, ResourceKind.DIAGNOSTIC_REPORT, report.id).id == episode.id
        assert store.get_diagnostic_report(report.id) == report

    def test_orphan_service_request_is_not_linked(self, resolver, store):
        request = ServiceRequest(id=new_id(), status="active", code=CodeableConcept(text="X-ray"))
        store.put_service_request(request)

        with pytest.raises(NotLinked):
            resolver.resolve(OWNER, ResourceKind.SERVICE_REQUEST, request.id)
        assert store.get_service_request(request.id).status == "active"

    def test_encounter_status_accessor(self, store, episode):
        eid = new_id()
        store.put_encounter(eid, "finished", episode_id=episode.id)
        assert store.get_encounter_status(eid) == "finished"
        assert store.get_encounter_status(new_id()) is None

    def test_index_statistics(self, store, episode):
        store.put_sub_resource(ResourceKind.OBSERVATION, new_id(), {}, episode_id=episode.id)
        store.put_sub_resource(ResourceKind.OBSERVATION, new_id(), {}, episode_id=None)
        stats = store.get_index_statistics()
        assert stats["observation"] == {"linked": 1, "unlinked": 1}


# ---------------------------------------------------------------------------
# Episode aggregate
# ---------------------------------------------------------------------------

class TestEpisodeAggregate:

    def test_snapshot_includes_both_histories_in_order(self, resolver, store, episode):
        store.append_diagnoses(episode.id, [build_diagnosis(code="I10")])
        store.append_diagnoses(episode.id, [
            build_diagnosis(code="E11", role="secondary"),
            build_diagnosis(code="I11", role="primary"),
        ])
        store.change_episode_status(episode.id, EpisodeStatus.CLOSED, reason="Treatment completed")

        rid = new_id()
        store.put_sub_resource(ResourceKind.CONDITION, rid, {}, episode_id=episode.id)
        resolved = resolver.resolve(OWNER, ResourceKind.CONDITION, rid)

        codes = [d.code.coding[0].code for d in resolved.diagnoses_history]
        assert codes == ["I10", "E11", "I11"]
        assert resolved.active_primary_diagnosis.code.coding[0].code == "I11"
        assert [h.status for h in resolved.status_history] == [EpisodeStatus.ACTIVE, EpisodeStatus.CLOSED]
        assert resolved.status == EpisodeStatus.CLOSED

    def test_only_one_primary_per_append(self, store, episode):
        with pytest.raises(InvalidDiagnoses):
            store.append_diagnoses(episode.id, [build_diagnosis(), build_diagnosis(code="I11")])
        assert store.get_episode(episode.id).diagnoses_history == []

    def test_terminal_status_cannot_change(self, store, episode):
        store.change_episode_status(episode.id, EpisodeStatus.CANCELLED)
        with pytest.raises(InvalidStatusTransition):
            store.change_episode_status(episode.id, EpisodeStatus.ACTIVE)
        assert len(store.get_episode(episode.id).status_history) == 2

    def test_duplicate_episode_is_rejected(self, store, episode):
        with pytest.raises(ResourceConflict):
            store.create_episode(build_episode(id=episode.id))

    def test_episode_by_id(self, resolver, episode):
        assert resolver.episode_by_id(OWNER, episode.id).id == episode.id
        with pytest.raises(EpisodeNotFound):
            resolver.episode_by_id(OWNER, new_id())


# ---------------------------------------------------------------------------
# Visibility scoping
# ---------------------------------------------------------------------------

class TestVisibility:

    def _linked(self, store, episode):
        rid = new_id()
        store.put_sub_resource(ResourceKind.OBSERVATION, rid, {}, episode_id=episode.id)
        return rid

    def test_other_legal_entity_is_forbidden(self, resolver, store, episode):
        rid = self._linked(store, episode)
        with pytest.raises(Forbidden) as exc:
            resolver.resolve(STRANGER, ResourceKind.OBSERVATION, rid)
        assert episode.id not in str(exc.value)

    def test_privileged_client_sees_everything(self, resolver, store, episode):
        rid = self._linked(store, episode)
        assert resolver.resolve(NHS, ResourceKind.OBSERVATION, rid).id == episode.id

    def test_active_approval_to_legal_entity_grants_access(self, resolver, store, episode):
        rid = self._linked(store, episode)
        grant(store, episode, Reference(type="legal_entity", id=OTHER_ORG))
        assert resolver.resolve(STRANGER, ResourceKind.OBSERVATION, rid).id == episode.id

    def test_active_approval_to_employee_grants_access(self, resolver, store, episode):
        rid = self._linked(store, episode)
        grant(store, episode, Reference(type="employee", id=STRANGER.employee_id))
        assert resolver.resolve(STRANGER, ResourceKind.OBSERVATION, rid).id == episode.id

    def test_lapsed_approval_does_not_grant_access(self, resolver, store, episode):
        rid = self._linked(store, episode)
        now = datetime.now(timezone.utc)
        grant(store, episode, Reference(type="legal_entity", id=OTHER_ORG),
              start=now - timedelta(days=10), end=now - timedelta(days=1))
        with pytest.raises(Forbidden):
            resolver.resolve(STRANGER, ResourceKind.OBSERVATION, rid)

    def test_revoked_approval_does_not_grant_access(self, resolver, store, episode):
        rid = self._linked(store, episode)
        approval = grant(store, episode, Reference(type="legal_entity", id=OTHER_ORG))
        store.revoke_approval(approval.id)
        with pytest.raises(Forbidden):
            resolver.resolve(STRANGER, ResourceKind.OBSERVATION, rid)

    def test_episode_by_id_is_scoped(self, resolver, episode):
        with pytest.raises(Forbidden):
            resolver.episode_by_id(STRANGER, episode.id)


# ---------------------------------------------------------------------------
# Storage failures
# ---------------------------------------------------------------------------

class TestStoreUnavailable:

    def test_closed_store_surfaces_store_unavailable(self, settings):
        db = Database(":memory:")
        store = ResourceStore(db)
        resolver = EpisodeResolver(store, settings)
        db.conn.close()

        with pytest.raises(StoreUnavailable) as exc:
            resolver.resolve(OWNER, ResourceKind.CONDITION, new_id())
        assert exc.value.retryable is True

    def test_transient_read_failure_is_retried(self, resolver, store, episode, monkeypatch):
        rid = new_id()
        store.put_sub_resource(ResourceKind.CONDITION, rid, {}, episode_id=episode.id)

        real_lookup = store.lookup_episode_id
        calls = {"n": 0}

        def flaky_lookup(kind, resource_id):
            calls["n"] += 1
            if calls["n"] < 3:
                raise StoreUnavailable("disk hiccup")
            return real_lookup(kind, resource_id)

        monkeypatch.setattr(store, "lookup_episode_id", flaky_lookup)

        assert resolver.resolve(OWNER, ResourceKind.CONDITION, rid).id == episode.id
        assert calls["n"] == 3

    def test_terminal_errors_are_not_retried(self, resolver, store, monkeypatch):
        calls = {"n": 0}

        def counting_lookup(kind, resource_id):
            calls["n"] += 1
            return None

        monkeypatch.setattr(store, "lookup_episode_id", counting_lookup)
        with pytest.raises(ResourceNotFound):
            resolver.resolve(OWNER, ResourceKind.CONDITION, new_id())
        assert calls["n"] == 1

    def test_transient_approval_check_is_retried(self, resolver, store, episode, monkeypatch):
        rid = new_id()
        store.put_sub_resource(ResourceKind.CONDITION, rid, {}, episode_id=episode.id)
        grant(store, episode, Reference(type="legal_entity", id=OTHER_ORG))

        real_check = store.has_active_approval
        calls = {"n": 0}

        def flaky_check(episode_id, grantees, now=None):
            calls["n"] += 1
            if calls["n"] == 1:
                raise StoreUnavailable("lock timeout")
            return real_check(episode_id, grantees, now)

        monkeypatch.setattr(store, "has_active_approval", flaky_check)

        assert resolver.resolve(STRANGER, ResourceKind.CONDITION, rid).id == episode.id
        assert calls["n"] == 2
