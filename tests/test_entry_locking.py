"""
Tests for the entry lock manager.

Covers:
    - acquire: free entry, same-user refresh, conflict with a live lock
    - stale takeover exactly at the threshold, refusal just before it
    - acquire on a completed entry
    - release by holder / non-holder, force release
    - complete_entry: required-field validation with missing_fields,
      payload lands on the team response (or entry baseline without a team),
      lock taken implicitly when free, refused while someone else holds it
    - compare-and-set is decided by the database, not a stale identity map
    - reopen, available entries, user's locked entries, expired lock sweep
    - lock endpoint status codes
"""

from datetime import timedelta

import pytest
from sqlalchemy import update
from sqlalchemy.orm.attributes import set_committed_value

from advisory_tracker.core.exceptions import (
    AlreadyLockedError,
    ConflictError,
    EntryCompletedError,
    InvalidTransitionError,
    NotFoundError,
    NotLockHolderError,
    ValidationError,
)
from advisory_tracker.models import db
from advisory_tracker.models.assignment import SheetResponse
from advisory_tracker.models.audit import EntryLog
from advisory_tracker.models.notification import SheetEvent
from advisory_tracker.models.sheet import SheetEntry
from advisory_tracker.models.tracking import EditedEntryTracking
from advisory_tracker.services import entry_locking
from advisory_tracker.services.completion import get_assignment
from advisory_tracker.utils.helpers import as_utc, utcnow

BASE = "/api/v1"

DONE = {"deployed_in_ke": "N", "vendor_contacted": "N", "current_status": "Not applicable"}


def _entry(entry_id) -> SheetEntry:
    return db.session.get(SheetEntry, entry_id, populate_existing=True)


# ═════════════════════════════════════════════════════════════════════════════
# Acquire / release
# ═════════════════════════════════════════════════════════════════════════════


class TestAcquire:
    def test_lock_free_entry(self, entries, alice):
        result = entry_locking.acquire_lock(entries[0].id, alice.id)
        assert result["locked"] is True
        assert result["stale_takeover"] is False
        entry = _entry(entries[0].id)
        assert entry.locked_by_user_id == alice.id
        assert entry.locked_at is not None

    def test_same_user_refreshes_timestamp(self, entries, alice):
        t0 = utcnow() - timedelta(minutes=10)
        entry_locking.acquire_lock(entries[0].id, alice.id, now=t0)
        entry_locking.acquire_lock(entries[0].id, alice.id)
        assert as_utc(_entry(entries[0].id).locked_at) > t0

    def test_other_user_conflicts(self, entries, alice, bob):
        entry_locking.acquire_lock(entries[0].id, alice.id)
        with pytest.raises(AlreadyLockedError) as exc:
            entry_locking.acquire_lock(entries[0].id, bob.id)
        assert exc.value.held_by == alice.id
        assert _entry(entries[0].id).locked_by_user_id == alice.id

    def test_stale_at_threshold_is_taken_over(self, entries, alice, bob):
        now = utcnow()
        entry_locking.acquire_lock(entries[0].id, alice.id, now=now - timedelta(minutes=30))
        result = entry_locking.acquire_lock(entries[0].id, bob.id, now=now)
        assert result["stale_takeover"] is True
        assert _entry(entries[0].id).locked_by_user_id == bob.id
        log = EntryLog.query.filter_by(entry_id=entries[0].id, user_id=bob.id, action="claimed").one()
        assert log.meta["previous_holder"] == alice.id

    def test_just_before_threshold_is_still_held(self, entries, alice, bob):
        now = utcnow()
        entry_locking.acquire_lock(entries[0].id, alice.id, now=now - timedelta(minutes=29, seconds=59))
        with pytest.raises(AlreadyLockedError):
            entry_locking.acquire_lock(entries[0].id, bob.id, now=now)

    def test_threshold_follows_config(self, app, entries, alice, bob):
        now = utcnow()
        entry_locking.acquire_lock(entries[0].id, alice.id, now=now - timedelta(minutes=6))
        app.config["ENTRY_LOCK_STALE_MINUTES"] = 5
        try:
            result = entry_locking.acquire_lock(entries[0].id, bob.id, now=now)
        finally:
            app.config["ENTRY_LOCK_STALE_MINUTES"] = 30
        assert result["stale_takeover"] is True

    def test_completed_entry_cannot_be_locked(self, entries, alice):
        entry_locking.complete_entry(entries[0].id, alice.id, DONE)
        with pytest.raises(EntryCompletedError):
            entry_locking.acquire_lock(entries[0].id, alice.id)

    def test_unknown_entry_and_user(self, entries, alice):
        with pytest.raises(NotFoundError):
            entry_locking.acquire_lock(999, alice.id)
        with pytest.raises(NotFoundError):
            entry_locking.acquire_lock(entries[0].id, 999)

    def test_decided_by_database_not_identity_map(self, entries, alice, bob):
        """A stale in-session copy showing 'unlocked' must not let a second user in."""
        entry = db.session.get(SheetEntry, entries[0].id)
        db.session.execute(
            update(SheetEntry)
            .where(SheetEntry.id == entry.id)
            .values(locked_by_user_id=alice.id, locked_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        set_committed_value(entry, "locked_by_user_id", None)
        set_committed_value(entry, "locked_at", None)
        assert entry.locked_by_user_id is None

        with pytest.raises(AlreadyLockedError) as exc:
            entry_locking.acquire_lock(entry.id, bob.id)
        assert exc.value.held_by == alice.id


class TestRelease:
    def test_holder_releases(self, entries, alice):
        entry_locking.acquire_lock(entries[0].id, alice.id)
        assert entry_locking.release_lock(entries[0].id, alice.id) == {
            "entry_id": entries[0].id, "locked": False,
        }
        assert _entry(entries[0].id).locked_by_user_id is None

    def test_non_holder_cannot_release(self, entries, alice, bob):
        entry_locking.acquire_lock(entries[0].id, alice.id)
        with pytest.raises(NotLockHolderError) as exc:
            entry_locking.release_lock(entries[0].id, bob.id)
        assert exc.value.held_by == alice.id
        assert _entry(entries[0].id).locked_by_user_id == alice.id

    def test_release_unlocked_entry(self, entries, alice):
        with pytest.raises(NotLockHolderError):
            entry_locking.release_lock(entries[0].id, alice.id)

    def test_force_release(self, entries, alice, admin):
        entry_locking.acquire_lock(entries[0].id, alice.id)
        result = entry_locking.force_release(entries[0].id, admin.id)
        assert result["previous_holder"] == alice.id
        assert _entry(entries[0].id).locked_by_user_id is None
        assert EntryLog.query.filter_by(action="force_released").count() == 1


# ═════════════════════════════════════════════════════════════════════════════
# Completion
# ═════════════════════════════════════════════════════════════════════════════


class TestCompleteEntry:
    def test_missing_fields_reported(self, entries, alice):
        entry_locking.acquire_lock(entries[0].id, alice.id)
        with pytest.raises(ValidationError) as exc:
            entry_locking.complete_entry(entries[0].id, alice.id, {"deployed_in_ke": "Y"})
        # the entry baseline already answers both yes/no flags with "N"
        assert exc.value.details["missing_fields"] == ["current_status", "site"]
        entry = _entry(entries[0].id)
        assert entry.is_completed is False
        assert entry.locked_by_user_id == alice.id

    def test_completes_and_releases_lock(self, entries, alice):
        entry_locking.acquire_lock(entries[0].id, alice.id)
        result = entry_locking.complete_entry(entries[0].id, alice.id, DONE)
        assert result["entry"]["is_completed"] is True
        assert result["entry"]["locked_by_user_id"] is None
        assert result["response"] is None
        entry = _entry(entries[0].id)
        assert entry.current_status == "Not applicable"
        assert entry.completed_at is not None

    def test_free_entry_is_claimed_and_completed(self, entries, alice):
        entry_locking.complete_entry(entries[1].id, alice.id, DONE)
        assert _entry(entries[1].id).is_completed is True

    def test_other_users_lock_blocks_completion(self, entries, alice, bob):
        entry_locking.acquire_lock(entries[0].id, alice.id)
        with pytest.raises(NotLockHolderError):
            entry_locking.complete_entry(entries[0].id, bob.id, DONE)
        assert _entry(entries[0].id).is_completed is False

    def test_stale_lock_does_not_block_completion(self, entries, alice, bob):
        entry_locking.acquire_lock(entries[0].id, alice.id, now=utcnow() - timedelta(hours=2))
        entry_locking.complete_entry(entries[0].id, bob.id, DONE)
        assert _entry(entries[0].id).is_completed is True

    def test_completed_entry_rejected(self, entries, alice):
        entry_locking.complete_entry(entries[0].id, alice.id, DONE)
        with pytest.raises(EntryCompletedError):
            entry_locking.complete_entry(entries[0].id, alice.id, DONE)

    def test_payload_lands_on_team_response(self, sheet, team_a, team_b, entries, alice, distributed):
        payload = {
            "deployed_in_ke": "Y", "site": "Substation 4", "vendor_contacted": "Y",
            "vendor_contact_date": "2026-10-02", "current_status": "Patch scheduled",
            "compensatory_controls_provided": "N",
        }
        result = entry_locking.complete_entry(entries[0].id, alice.id, payload)
        assert result["response"]["site"] == "Substation 4"
        assert result["response"]["cve"] == "CVE-2026-0001"

        entry = _entry(entries[0].id)
        assert entry.is_completed is True
        assert entry.site is None

        assignment_b = get_assignment(sheet.id, team_b.id)
        rb = SheetResponse.query.filter_by(team_sheet_id=assignment_b.id,
                                           original_entry_id=entries[0].id).one()
        assert rb.site is None

        assignment_a = get_assignment(sheet.id, team_a.id)
        assert assignment_a.status == "in_progress"
        assert SheetEvent.query.filter_by(event_type="entry.completed").count() == 1
        tracking = EditedEntryTracking.query.filter_by(user_id=alice.id, entry_id=entries[0].id).one()
        assert tracking.response_id == result["response"]["id"]

    def test_required_fields_checked_against_merged_values(self, sheet, team_a, entries, alice, distributed):
        from advisory_tracker.services.fanout_service import update_response

        assignment = get_assignment(sheet.id, team_a.id)
        response = SheetResponse.query.filter_by(team_sheet_id=assignment.id,
                                                 original_entry_id=entries[0].id).one()
        update_response(response.id, team_a.id, alice.id, {"current_status": "Investigating"})

        result = entry_locking.complete_entry(entries[0].id, alice.id, {"deployed_in_ke": "N"})
        assert result["response"]["current_status"] == "Investigating"

    def test_refused_after_team_submitted(self, sheet, team_a, entries, alice, distributed):
        assignment = get_assignment(sheet.id, team_a.id)
        assignment.status = "completed"
        db.session.commit()
        with pytest.raises(InvalidTransitionError):
            entry_locking.complete_entry(entries[0].id, alice.id, DONE)

    def test_explicit_team_without_assignment(self, entries, alice, team_b):
        with pytest.raises(NotFoundError):
            entry_locking.complete_entry(entries[0].id, alice.id, DONE, team_id=team_b.id)


class TestReopen:
    def test_reopen_allows_locking_again(self, entries, alice, bob, admin):
        entry_locking.complete_entry(entries[0].id, alice.id, DONE)
        entry_locking.reopen_entry(entries[0].id, admin.id)
        assert _entry(entries[0].id).is_completed is False
        entry_locking.acquire_lock(entries[0].id, bob.id)

    def test_reopen_requires_completed(self, entries, admin):
        with pytest.raises(ConflictError):
            entry_locking.reopen_entry(entries[0].id, admin.id)


# ═════════════════════════════════════════════════════════════════════════════
# Queries & sweep
# ═════════════════════════════════════════════════════════════════════════════


class TestQueries:
    def test_available_entries(self, sheet, entries, alice, bob):
        now = utcnow()
        entry_locking.acquire_lock(entries[0].id, bob.id, now=now)                        # held by other
        entry_locking.acquire_lock(entries[1].id, bob.id, now=now - timedelta(minutes=40))  # stale
        entry_locking.complete_entry(entries[2].id, alice.id, DONE)                       # completed

        available = entry_locking.available_entries(sheet.id, alice.id, now=now)
        assert [e.id for e in available] == [entries[1].id]

        own = entry_locking.available_entries(sheet.id, bob.id, now=now)
        assert [e.id for e in own] == [entries[0].id, entries[1].id]

    def test_available_entries_for_unassigned_team(self, sheet, entries, alice, team_a):
        assert entry_locking.available_entries(sheet.id, alice.id, team_id=team_a.id) == []

    def test_user_locked_entries_excludes_stale(self, entries, alice):
        now = utcnow()
        entry_locking.acquire_lock(entries[0].id, alice.id, now=now - timedelta(minutes=5))
        entry_locking.acquire_lock(entries[1].id, alice.id, now=now - timedelta(minutes=50))
        locked = entry_locking.user_locked_entries(alice.id, now=now)
        assert [e.id for e in locked] == [entries[0].id]

    def test_release_expired_locks(self, entries, alice, bob):
        now = utcnow()
        entry_locking.acquire_lock(entries[0].id, alice.id, now=now - timedelta(minutes=31))
        entry_locking.acquire_lock(entries[1].id, bob.id, now=now)

        result = entry_locking.release_expired_locks(now=now)
        assert result == {"released": 1, "entry_ids": [entries[0].id]}
        assert _entry(entries[0].id).locked_by_user_id is None
        assert _entry(entries[1].id).locked_by_user_id == bob.id
        assert EntryLog.query.filter_by(action="expired_released").count() == 1


# ═════════════════════════════════════════════════════════════════════════════
# API
# ═════════════════════════════════════════════════════════════════════════════


class TestLockingApi:
    def test_lock_and_conflict(self, client, entries, alice, bob):
        url = f"{BASE}/entries/{entries[0].id}/lock"
        assert client.post(url, json={"user_id": alice.id}).status_code == 200
        res = client.post(url, json={"user_id": bob.id})
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_LOCKED"

    def test_lock_requires_user(self, client, entries):
        res = client.post(f"{BASE}/entries/{entries[0].id}/lock", json={})
        assert res.status_code == 400

    def test_unlock_by_non_holder(self, client, entries, alice, bob):
        client.post(f"{BASE}/entries/{entries[0].id}/lock", json={"user_id": alice.id})
        res = client.post(f"{BASE}/entries/{entries[0].id}/unlock", json={"user_id": bob.id})
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_NOT_HOLDER"

    def test_complete_missing_fields_422(self, client, entries, alice):
        res = client.post(f"{BASE}/entries/{entries[0].id}/complete",
                          json={"user_id": alice.id, "deployed_in_ke": "N"})
        assert res.status_code == 422
        assert res.get_json()["details"]["missing_fields"] == ["current_status"]

    def test_complete_then_lock_completed_409(self, client, entries, alice):
        res = client.post(f"{BASE}/entries/{entries[0].id}/complete",
                          json={"user_id": alice.id, **DONE})
        assert res.status_code == 200
        res = client.post(f"{BASE}/entries/{entries[0].id}/lock", json={"user_id": alice.id})
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_COMPLETED"

    def test_unknown_entry_404(self, client, alice):
        res = client.post(f"{BASE}/entries/999/lock", json={"user_id": alice.id})
        assert res.status_code == 404

    def test_available_entries_endpoint(self, client, sheet, entries, alice):
        res = client.get(f"{BASE}/sheets/{sheet.id}/available-entries?user_id={alice.id}")
        assert res.status_code == 200
        assert res.get_json()["total"] == 3

    def test_locked_entries_endpoint(self, client, entries, alice):
        client.post(f"{BASE}/entries/{entries[2].id}/lock", json={"user_id": alice.id})
        res = client.get(f"{BASE}/users/{alice.id}/locked-entries")
        assert [e["id"] for e in res.get_json()["items"]] == [entries[2].id]
