"""
Tests for sheet distribution (response fan-out), team views and response edits.

Covers:
    - distribute creates one assignment per team and one response per (team, entry)
    - responses are seeded from the entry baseline, yes/no flags default to 'N'
    - redistribution is idempotent (existing teams skipped)
    - error paths: no teams, unknown team or user, sheet without entries
    - backfill_responses for entries added after distribution
    - team view merges canonical fields, lock overlay and progress
    - update_response: team isolation, first edit starts the assignment,
      canonical fields read-only, refused while another user holds the lock
      or after submission
    - overview and API status codes
"""

from datetime import timedelta

import pytest

from advisory_tracker.core.exceptions import (
    AlreadyLockedError,
    DistributionError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from advisory_tracker.models import db
from advisory_tracker.models.assignment import SheetResponse, TeamSheet
from advisory_tracker.models.notification import SheetEvent
from advisory_tracker.models.sheet import Sheet, SheetEntry
from advisory_tracker.services import fanout_service
from advisory_tracker.services.completion import get_assignment
from advisory_tracker.services.entry_locking import acquire_lock
from advisory_tracker.services.entry_service import add_entry
from advisory_tracker.utils.helpers import utcnow

BASE = "/api/v1"


def _response(sheet_id, team_id, entry_id) -> SheetResponse:
    assignment = get_assignment(sheet_id, team_id)
    return SheetResponse.query.filter_by(team_sheet_id=assignment.id, original_entry_id=entry_id).one()


# ═════════════════════════════════════════════════════════════════════════════
# Distribution
# ═════════════════════════════════════════════════════════════════════════════


class TestDistribute:
    def test_creates_assignments_and_responses(self, sheet, team_a, team_b, distributed):
        assert distributed["assignments_created"] == 2
        assert distributed["responses_created"] == 6
        assert distributed["skipped_team_ids"] == []

        for team in (team_a, team_b):
            assignment = get_assignment(sheet.id, team.id)
            assert assignment.status == "assigned"
            assert assignment.responses.count() == 3

        refreshed = db.session.get(Sheet, sheet.id)
        assert refreshed.status == "distributed"
        assert refreshed.distributed_at is not None

    def test_responses_seeded_from_baseline(self, sheet, team_a, team_b, admin):
        entry = SheetEntry.query.filter_by(sheet_id=sheet.id, row_number=1).one()
        entry.current_status = "Under review"
        entry.vendor_contacted = None
        db.session.commit()

        fanout_service.distribute(sheet.id, [team_a.id], distributed_by=admin.id)

        response = _response(sheet.id, team_a.id, entry.id)
        assert response.current_status == "Under review"
        assert response.vendor_contacted == "N"
        assert response.compensatory_controls_provided == "N"

    def test_redistribution_is_idempotent(self, sheet, team_a, team_b, distributed):
        again = fanout_service.distribute(sheet.id, [team_a.id, team_b.id])
        assert again["assignments_created"] == 0
        assert again["responses_created"] == 0
        assert sorted(again["skipped_team_ids"]) == sorted([team_a.id, team_b.id])
        assert TeamSheet.query.filter_by(sheet_id=sheet.id).count() == 2
        assert SheetResponse.query.count() == 6

    def test_adding_a_team_later(self, sheet, team_a, team_b, admin):
        fanout_service.distribute(sheet.id, [team_a.id], distributed_by=admin.id)
        result = fanout_service.distribute(sheet.id, [team_a.id, team_b.id], distributed_by=admin.id)
        assert result["assignments_created"] == 1
        assert result["skipped_team_ids"] == [team_a.id]

    def test_emits_one_event_per_new_team(self, sheet, team_a, team_b, distributed):
        events = SheetEvent.query.filter_by(event_type="sheet.distributed").all()
        assert sorted(e.team_id for e in events) == sorted([team_a.id, team_b.id])
        assert all(e.payload["entries"] == 3 for e in events)

    def test_no_teams(self, sheet):
        with pytest.raises(DistributionError):
            fanout_service.distribute(sheet.id, [])

    def test_unknown_team(self, sheet, team_a):
        with pytest.raises(NotFoundError):
            fanout_service.distribute(sheet.id, [team_a.id, 999])
        assert TeamSheet.query.count() == 0

    def test_unknown_distributing_user(self, sheet, team_a):
        with pytest.raises(NotFoundError):
            fanout_service.distribute(sheet.id, [team_a.id], distributed_by=9999)
        assert TeamSheet.query.count() == 0

    def test_sheet_without_entries(self, team_a):
        s = Sheet(title="Nothing yet")
        db.session.add(s)
        db.session.commit()
        with pytest.raises(DistributionError):
            fanout_service.distribute(s.id, [team_a.id])

    def test_distribute_to_all_active_teams(self, sheet, team_a, team_b):
        team_b.is_active = False
        db.session.commit()
        result = fanout_service.distribute_to_all_teams(sheet.id)
        assert result["assignments_created"] == 1
        assert TeamSheet.query.one().team_id == team_a.id


class TestBackfill:
    def test_backfills_entries_added_after_distribution(self, sheet, distributed):
        add_entry(sheet.id, {"product_name": "Late finding"})
        result = fanout_service.backfill_responses(sheet.id)
        assert result["responses_created"] == 2
        assert SheetResponse.query.count() == 8

    def test_backfill_is_a_noop_when_complete(self, sheet, distributed):
        assert fanout_service.backfill_responses(sheet.id)["responses_created"] == 0


# ═════════════════════════════════════════════════════════════════════════════
# Team view & response edits
# ═════════════════════════════════════════════════════════════════════════════


class TestTeamView:
    def test_view_joins_canonical_fields(self, sheet, team_a, distributed):
        view = fanout_service.get_team_view(sheet.id, team_a.id)
        assert view["assignment"]["team_id"] == team_a.id
        assert [r["product_name"] for r in view["responses"]] == [
            "Apache Tomcat", "OpenSSL", "Siemens S7 PLC",
        ]
        first = view["responses"][0]
        assert first["cve"] == "CVE-2026-0001"
        assert first["locked_by_user_id"] is None
        assert view["progress"]["total"] == 3
        assert view["progress"]["complete"] == 0
        assert view["edited_entry_ids"] == []

    def test_view_for_unassigned_team(self, sheet, team_a):
        with pytest.raises(NotFoundError):
            fanout_service.get_team_view(sheet.id, team_a.id)


class TestUpdateResponse:
    def test_edit_is_isolated_per_team(self, sheet, team_a, team_b, entries, alice, distributed):
        entry = entries[0]
        ra = _response(sheet.id, team_a.id, entry.id)
        rb = _response(sheet.id, team_b.id, entry.id)

        fanout_service.update_response(ra.id, team_a.id, alice.id, {"current_status": "Patched"})

        assert db.session.get(SheetResponse, ra.id).current_status == "Patched"
        assert db.session.get(SheetResponse, rb.id).current_status is None
        assert db.session.get(SheetEntry, entry.id).current_status is None

    def test_first_edit_starts_assignment(self, sheet, team_a, entries, alice, carol, distributed):
        ra = _response(sheet.id, team_a.id, entries[0].id)
        rb = _response(sheet.id, team_a.id, entries[1].id)
        fanout_service.update_response(ra.id, team_a.id, alice.id, {"site": "North"})
        fanout_service.update_response(rb.id, team_a.id, carol.id, {"site": "South"})

        assignment = get_assignment(sheet.id, team_a.id)
        assert assignment.status == "in_progress"
        assert assignment.started_by == alice.id
        assert SheetEvent.query.filter_by(event_type="assignment.started").count() == 1

    def test_edit_is_tracked(self, sheet, team_a, entries, alice, distributed):
        ra = _response(sheet.id, team_a.id, entries[1].id)
        fanout_service.update_response(ra.id, team_a.id, alice.id, {"comments": "asked vendor"})
        view = fanout_service.get_team_view(sheet.id, team_a.id)
        assert view["edited_entry_ids"] == [entries[1].id]

    def test_canonical_fields_rejected(self, sheet, team_a, entries, alice, distributed):
        ra = _response(sheet.id, team_a.id, entries[0].id)
        with pytest.raises(ValidationError):
            fanout_service.update_response(ra.id, team_a.id, alice.id, {"cve": "CVE-0"})

    def test_other_team_cannot_edit(self, sheet, team_a, team_b, entries, bob, distributed):
        ra = _response(sheet.id, team_a.id, entries[0].id)
        with pytest.raises(NotFoundError):
            fanout_service.update_response(ra.id, team_b.id, bob.id, {"site": "x"})

    def test_refused_while_locked_by_other(self, sheet, team_a, entries, alice, carol, distributed):
        ra = _response(sheet.id, team_a.id, entries[0].id)
        acquire_lock(entries[0].id, carol.id)
        with pytest.raises(AlreadyLockedError):
            fanout_service.update_response(ra.id, team_a.id, alice.id, {"site": "x"})

    def test_allowed_when_other_lock_is_stale(self, sheet, team_a, entries, alice, carol, distributed):
        ra = _response(sheet.id, team_a.id, entries[0].id)
        acquire_lock(entries[0].id, carol.id, now=utcnow() - timedelta(minutes=45))
        result = fanout_service.update_response(ra.id, team_a.id, alice.id, {"site": "x"})
        assert result["site"] == "x"

    def test_refused_after_submission(self, sheet, team_a, alice, distributed):
        assignment = get_assignment(sheet.id, team_a.id)
        assignment.status = "completed"
        db.session.commit()
        ra = assignment.responses.first()
        with pytest.raises(InvalidTransitionError):
            fanout_service.update_response(ra.id, team_a.id, alice.id, {"site": "x"})

    def test_unknown_user(self, sheet, team_a, entries, distributed):
        ra = _response(sheet.id, team_a.id, entries[0].id)
        with pytest.raises(NotFoundError):
            fanout_service.update_response(ra.id, team_a.id, 9999, {"current_status": "Open"})
        assert db.session.get(SheetResponse, ra.id).current_status is None
        assert get_assignment(sheet.id, team_a.id).status == "assigned"


# ═════════════════════════════════════════════════════════════════════════════
# API
# ═════════════════════════════════════════════════════════════════════════════


class TestSheetsApi:
    def test_distribute_endpoint(self, client, sheet, team_a, team_b, admin):
        res = client.post(f"{BASE}/sheets/{sheet.id}/distribute", json={
            "team_ids": [team_a.id, team_b.id], "distributed_by": admin.id,
        })
        assert res.status_code == 201
        assert res.get_json()["responses_created"] == 6

    def test_distribute_all_teams(self, client, sheet, team_a, team_b):
        res = client.post(f"{BASE}/sheets/{sheet.id}/distribute", json={"all_teams": True})
        assert res.status_code == 201
        assert res.get_json()["assignments_created"] == 2

    def test_distribute_requires_team_ids(self, client, sheet):
        res = client.post(f"{BASE}/sheets/{sheet.id}/distribute", json={})
        assert res.status_code == 400

    def test_distribute_unknown_sheet(self, client, team_a):
        res = client.post(f"{BASE}/sheets/999/distribute", json={"team_ids": [team_a.id]})
        assert res.status_code == 404

    def test_distribute_empty_sheet(self, client, team_a):
        s = Sheet(title="Blank")
        db.session.add(s)
        db.session.commit()
        res = client.post(f"{BASE}/sheets/{s.id}/distribute", json={"team_ids": [team_a.id]})
        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_DISTRIBUTION"

    def test_team_view_endpoint(self, client, sheet, team_a, distributed):
        res = client.get(f"{BASE}/sheets/{sheet.id}/teams/{team_a.id}")
        assert res.status_code == 200
        assert len(res.get_json()["responses"]) == 3

    def test_update_response_endpoint(self, client, sheet, team_a, entries, alice, distributed):
        ra = _response(sheet.id, team_a.id, entries[0].id)
        res = client.put(
            f"{BASE}/sheets/{sheet.id}/teams/{team_a.id}/responses/{ra.id}",
            json={"user_id": alice.id, "deployed_in_ke": "no"},
        )
        assert res.status_code == 200
        assert res.get_json()["deployed_in_ke"] == "N"

    def test_update_response_canonical_field_422(self, client, sheet, team_a, entries, alice, distributed):
        ra = _response(sheet.id, team_a.id, entries[0].id)
        res = client.put(
            f"{BASE}/sheets/{sheet.id}/teams/{team_a.id}/responses/{ra.id}",
            json={"user_id": alice.id, "product_name": "renamed"},
        )
        assert res.status_code == 422
        assert res.get_json()["details"]["read_only_fields"] == ["product_name"]

    def test_update_response_locked_409(self, client, sheet, team_a, entries, alice, carol, distributed):
        ra = _response(sheet.id, team_a.id, entries[0].id)
        acquire_lock(entries[0].id, carol.id)
        res = client.put(
            f"{BASE}/sheets/{sheet.id}/teams/{team_a.id}/responses/{ra.id}",
            json={"user_id": alice.id, "site": "x"},
        )
        assert res.status_code == 409
        assert res.get_json()["details"]["held_by"] == carol.id

    def test_update_response_unknown_user_404(self, client, sheet, team_a, entries, distributed):
        ra = _response(sheet.id, team_a.id, entries[0].id)
        res = client.put(
            f"{BASE}/sheets/{sheet.id}/teams/{team_a.id}/responses/{ra.id}",
            json={"user_id": 9999, "current_status": "Open"},
        )
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_distribute_unknown_user_404(self, client, sheet, team_a):
        res = client.post(f"{BASE}/sheets/{sheet.id}/distribute", json={
            "team_ids": [team_a.id], "distributed_by": 9999,
        })
        assert res.status_code == 404

    def test_overview(self, client, sheet, distributed):
        res = client.get(f"{BASE}/sheets/{sheet.id}/overview")
        assert res.status_code == 200
        body = res.get_json()
        assert body["entry_count"] == 3
        assert body["status_counts"] == {"assigned": 2, "in_progress": 0, "completed": 0}
        assert len(body["teams"]) == 2
