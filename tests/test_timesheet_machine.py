import time as time_module

import pytest
from sqlalchemy.exc import IntegrityError

from crewsheet.config import settings
from crewsheet.errors import (
    ConflictError, DocumentGenerationError, InvalidTransition, NotFound, PermissionDenied,
    StaleStateError, ValidationError,
)
from crewsheet.models.models import (
    AuditLog, PDFArtifact, Shift, SignatureAttestation, TimeEntry, Timesheet, TimesheetStatus, User,
    CLOCK_CLOCKED_IN,
)
from crewsheet.services import documents, signatures
from crewsheet.services import timesheet_machine as machine
from crewsheet.services.events import ACTION_FINALIZE
from crewsheet.services.projections import get_history, get_timesheet, get_timesheet_pdf, list_pending

from conftest import utc


def _actions(db, ts):
    rows = db.query(AuditLog).filter(AuditLog.entity_id == ts.id).order_by(AuditLog.timestamp_utc.asc()).all()
    return [r.action for r in rows]


def _complete(db, world, signature_png):
    ts = machine.finalize(db, world.shift.id, world.crew_chief)
    machine.client_approve(db, ts.id, world.client_user, signature_png)
    return machine.manager_approve(db, ts.id, world.manager, signature_png)


class TestHappyPath:
    def test_finalize_creates_pending_client_approval(self, db, world):
        ts = machine.finalize(db, world.shift.id, world.crew_chief)
        assert ts.status == TimesheetStatus.PENDING_CLIENT_APPROVAL.value
        assert ts.version == 1
        assert ts.cycle == 1
        assert ts.submitted_by == world.crew_chief.id
        assert _actions(db, ts) == ["FINALIZE"]

    def test_full_approval_completes_timesheet_shift_and_pdf(self, db, world, signature_png):
        ts = _complete(db, world, signature_png)

        assert ts.status == TimesheetStatus.COMPLETED.value
        assert ts.version == 3
        assert ts.client_approved_by == world.client_user.id
        assert ts.manager_approved_by == world.manager.id

        shift = db.get(Shift, world.shift.id)
        db.refresh(shift)
        assert shift.status == "Completed"

        artifact = db.query(PDFArtifact).filter(PDFArtifact.timesheet_id == ts.id).one()
        assert artifact.timesheet_version == ts.version
        assert artifact.data.startswith(b"%PDF")
        assert artifact.size_bytes == len(artifact.data)
        assert _actions(db, ts) == ["FINALIZE", "CLIENT_APPROVE", "MANAGER_APPROVE"]

    def test_signature_data_url_is_accepted(self, db, world, signature_data_url):
        ts = machine.finalize(db, world.shift.id, world.crew_chief)
        ts = machine.client_approve(db, ts.id, world.client_user, signature_data_url)
        assert ts.status == TimesheetStatus.PENDING_FINAL_APPROVAL.value

    def test_projection_reports_hours_and_signatures(self, db, world, signature_png):
        ts = _complete(db, world, signature_png)
        out = get_timesheet(db, ts.id, world.client_user)

        assert str(out.total_hours) == "15.00"
        hours = {p.employee_name: str(p.total_hours) for p in out.personnel}
        assert hours == {"Ana Rigger": "8.00", "Bob Stagehand": "7.00"}
        assert out.client_signature.signer_name == "Alex Acme"
        assert out.manager_signature.approval_type == "manager"
        assert out.pdf is not None
        assert out.shift.status == "Completed"


class TestInvalidTransitions:
    def test_manager_cannot_approve_before_client(self, db, world, signature_png):
        ts = machine.finalize(db, world.shift.id, world.crew_chief)
        with pytest.raises(InvalidTransition):
            machine.manager_approve(db, ts.id, world.manager, signature_png)

    def test_completed_is_terminal(self, db, world, signature_png):
        ts = _complete(db, world, signature_png)
        with pytest.raises(InvalidTransition):
            machine.reject(db, ts.id, world.manager, "too late")
        with pytest.raises(InvalidTransition):
            machine.resubmit(db, ts.id, world.crew_chief)
        with pytest.raises(InvalidTransition):
            machine.client_approve(db, ts.id, world.client_user, signature_png)

    def test_rejected_cannot_be_approved(self, db, world, signature_png):
        ts = machine.finalize(db, world.shift.id, world.crew_chief)
        machine.reject(db, ts.id, world.client_user, "missing a worker")
        with pytest.raises(InvalidTransition):
            machine.client_approve(db, ts.id, world.client_user, signature_png)

    def test_pending_cannot_be_resubmitted(self, db, world):
        ts = machine.finalize(db, world.shift.id, world.crew_chief)
        with pytest.raises(InvalidTransition):
            machine.resubmit(db, ts.id, world.crew_chief)

    def test_legality_is_checked_before_permission(self, db, world, signature_png):
        ts = machine.finalize(db, world.shift.id, world.crew_chief)
        # An employee has no approval rights at all, but the stage is wrong first
        with pytest.raises(InvalidTransition):
            machine.manager_approve(db, ts.id, world.bob, signature_png)

    def test_cancelled_shift_cannot_be_finalized(self, db, world):
        shift = db.get(Shift, world.shift.id)
        shift.status = "Cancelled"
        db.commit()
        with pytest.raises(InvalidTransition):
            machine.finalize(db, world.shift.id, world.crew_chief)

    def test_unknown_ids(self, db, world):
        with pytest.raises(NotFound):
            machine.finalize(db, "not-a-uuid", world.crew_chief)
        with pytest.raises(NotFound):
            machine.reject(db, "7f1c0e4e-3c1f-4d4c-9d1e-2a2b3c4d5e6f", world.manager, "x")

    def test_failed_transition_leaves_no_trace(self, db, world, signature_png):
        ts = machine.finalize(db, world.shift.id, world.crew_chief)
        with pytest.raises(InvalidTransition):
            machine.manager_approve(db, ts.id, world.manager, signature_png)
        db.refresh(ts)
        assert ts.status == TimesheetStatus.PENDING_CLIENT_APPROVAL.value
        assert ts.version == 1
        assert _actions(db, ts) == ["FINALIZE"]


class TestPermissions:
    def test_employee_cannot_finalize(self, db, world):
        with pytest.raises(PermissionDenied):
            machine.finalize(db, world.shift.id, world.bob)

    def test_crew_chief_of_another_shift_cannot_finalize(self, db, world):
        with pytest.raises(PermissionDenied):
            machine.finalize(db, world.shift.id, world.other_chief)

    def test_manager_can_finalize(self, db, world):
        ts = machine.finalize(db, world.shift.id, world.manager)
        assert ts.submitted_by == world.manager.id

    def test_other_company_cannot_client_approve(self, db, world, signature_png):
        ts = machine.finalize(db, world.shift.id, world.crew_chief)
        with pytest.raises(PermissionDenied):
            machine.client_approve(db, ts.id, world.other_client_user, signature_png)

    def test_client_cannot_give_final_approval(self, db, world, signature_png):
        ts = machine.finalize(db, world.shift.id, world.crew_chief)
        machine.client_approve(db, ts.id, world.client_user, signature_png)
        with pytest.raises(PermissionDenied):
            machine.manager_approve(db, ts.id, world.client_user, signature_png)

    def test_client_cannot_reject_at_final_stage(self, db, world, signature_png):
        ts = machine.finalize(db, world.shift.id, world.crew_chief)
        machine.client_approve(db, ts.id, world.client_user, signature_png)
        with pytest.raises(PermissionDenied):
            machine.reject(db, ts.id, world.client_user, "changed my mind")

    def test_crew_chief_override_is_recorded(self, db, world, signature_png):
        ts = machine.finalize(db, world.shift.id, world.crew_chief)
        ts = machine.client_approve(db, ts.id, world.crew_chief, signature_png, justification="client offsite")
        attestation = db.get(SignatureAttestation, ts.client_signature_id)
        assert attestation.is_override is True
        assert attestation.justification == "client offsite"

    def test_other_company_cannot_read(self, db, world):
        ts = machine.finalize(db, world.shift.id, world.crew_chief)
        with pytest.raises(PermissionDenied):
            get_timesheet(db, ts.id, world.other_client_user)
        with pytest.raises(PermissionDenied):
            get_history(db, ts.id, world.bob)


class TestValidation:
    def test_reject_requires_reason(self, db, world):
        ts = machine.finalize(db, world.shift.id, world.crew_chief)
        with pytest.raises(ValidationError) as exc:
            machine.reject(db, ts.id, world.client_user, "   ")
        assert exc.value.field == "reason"

    def test_finalize_blocked_while_a_worker_is_clocked_in(self, db, world):
        assignment = world.bob_assignment
        assignment.status = CLOCK_CLOCKED_IN
        db.commit()
        with pytest.raises(ValidationError):
            machine.finalize(db, world.shift.id, world.crew_chief)
        assert db.query(Timesheet).count() == 0

    def test_finalize_refuses_malformed_time_entries(self, db, world):
        entry = db.query(TimeEntry).filter(TimeEntry.assigned_personnel_id == world.ana_assignment.id).one()
        entry.clock_out = utc(8)
        db.commit()
        with pytest.raises(ValidationError) as exc:
            machine.finalize(db, world.shift.id, world.crew_chief)
        assert exc.value.field == "time_entries"
        assert db.query(Timesheet).count() == 0

    def test_client_approve_requires_signature(self, db, world):
        ts = machine.finalize(db, world.shift.id, world.crew_chief)
        with pytest.raises(ValidationError):
            machine.client_approve(db, ts.id, world.client_user, None)
        with pytest.raises(ValidationError):
            machine.client_approve(db, ts.id, world.client_user, b"not an image")
        db.refresh(ts)
        assert ts.status == TimesheetStatus.PENDING_CLIENT_APPROVAL.value
        assert db.query(SignatureAttestation).count() == 0


class TestSingleActiveTimesheet:
    def test_second_finalize_conflicts(self, db, world):
        machine.finalize(db, world.shift.id, world.crew_chief)
        with pytest.raises(ConflictError):
            machine.finalize(db, world.shift.id, world.manager)
        assert db.query(Timesheet).filter(Timesheet.shift_id == world.shift.id).count() == 1

    def test_completed_shift_cannot_be_finalized_again(self, db, world, signature_png):
        _complete(db, world, signature_png)
        with pytest.raises(ConflictError):
            machine.finalize(db, world.shift.id, world.manager)

    def test_database_rejects_second_active_row(self, db, world):
        machine.finalize(db, world.shift.id, world.crew_chief)
        db.add(Timesheet(shift_id=world.shift.id, status=TimesheetStatus.PENDING_FINAL_APPROVAL.value))
        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()

    def test_only_one_of_several_racing_finalizes_wins(self, session_factory, world, monkeypatch):
        # Every caller passes the pre-check, as if they all read before anyone inserted
        monkeypatch.setattr(machine, "_other_timesheet", lambda *args, **kwargs: None)
        actor_ids = [world.crew_chief.id, world.manager.id, world.crew_chief.id]
        sessions = [session_factory() for _ in actor_ids]
        outcomes = []
        try:
            actors = [s.get(User, actor_id) for s, actor_id in zip(sessions, actor_ids)]
            for session, actor in zip(sessions, actors):
                try:
                    machine.finalize(session, world.shift.id, actor)
                    outcomes.append("created")
                except ConflictError:
                    outcomes.append("conflict")
        finally:
            for session in sessions:
                session.close()

        assert outcomes == ["created", "conflict", "conflict"]
        check = session_factory()
        try:
            assert check.query(Timesheet).filter(Timesheet.shift_id == world.shift.id).count() == 1
            assert check.query(AuditLog).filter(AuditLog.action == "FINALIZE").count() == 1
        finally:
            check.close()

    def test_inactive_rows_do_not_count(self, db, world):
        db.add(Timesheet(shift_id=world.shift.id, status=TimesheetStatus.REJECTED.value))
        db.add(Timesheet(shift_id=world.shift.id, status=TimesheetStatus.REJECTED.value))
        db.commit()
        assert db.query(Timesheet).count() == 2


class TestConcurrency:
    def test_client_approve_races_reject(self, session_factory, world, signature_png):
        setup = session_factory()
        ts_id = machine.finalize(setup, world.shift.id, setup.get(User, world.crew_chief.id)).id
        client_id = world.client_user.id
        setup.close()

        rejecter = session_factory()
        approver = session_factory()
        try:
            # The rejecting session reads the timesheet while it is still pending
            machine.load_timesheet(rejecter, ts_id)
            rejecting_actor = rejecter.get(User, client_id)

            machine.client_approve(approver, ts_id, approver.get(User, client_id), signature_png)

            with pytest.raises(StaleStateError):
                machine.reject(rejecter, ts_id, rejecting_actor, "hours look wrong")
        finally:
            rejecter.close()
            approver.close()

        check = session_factory()
        try:
            ts = check.get(Timesheet, ts_id)
            assert ts.status == TimesheetStatus.PENDING_FINAL_APPROVAL.value
            assert ts.rejection_reason is None
            assert "REJECT" not in _actions(check, ts)
        finally:
            check.close()

    def test_double_client_approval_loses_as_stale(self, session_factory, world, signature_png):
        setup = session_factory()
        ts_id = machine.finalize(setup, world.shift.id, setup.get(User, world.crew_chief.id)).id
        setup.close()

        late = session_factory()
        first = session_factory()
        try:
            machine.load_timesheet(late, ts_id)
            late_actor = late.get(User, world.crew_chief.id)
            machine.client_approve(first, ts_id, first.get(User, world.client_user.id), signature_png)
            with pytest.raises(StaleStateError):
                machine.client_approve(late, ts_id, late_actor, signature_png)
        finally:
            late.close()
            first.close()


    def test_client_approval_losing_at_insert_is_stale(self, session_factory, world, signature_png, monkeypatch):
        setup = session_factory()
        ts_id = machine.finalize(setup, world.shift.id, setup.get(User, world.crew_chief.id)).id
        setup.close()

        late = session_factory()
        first = session_factory()
        lookup = signatures.get_attestation
        raced = []

        def lookup_then_lose_race(db, timesheet, approval_type):
            found = lookup(db, timesheet, approval_type)
            if db is late and not raced:
                # The other approval commits after the late one looked but before it inserts
                raced.append(True)
                machine.client_approve(first, ts_id, first.get(User, world.client_user.id), signature_png)
            return found

        monkeypatch.setattr(signatures, "get_attestation", lookup_then_lose_race)
        try:
            late_actor = late.get(User, world.crew_chief.id)
            with pytest.raises(StaleStateError):
                machine.client_approve(late, ts_id, late_actor, signature_png)
            assert raced == [True]
            # The losing session was rolled back and is usable again
            assert late.get(Timesheet, ts_id).status == TimesheetStatus.PENDING_FINAL_APPROVAL.value
        finally:
            late.close()
            first.close()

        check = session_factory()
        try:
            rows = check.query(SignatureAttestation).filter(SignatureAttestation.timesheet_id == ts_id).all()
            assert [r.signer_id for r in rows] == [world.client_user.id]
            assert _actions(check, check.get(Timesheet, ts_id)) == ["FINALIZE", "CLIENT_APPROVE"]
        finally:
            check.close()

class TestDocumentFailure:
    def test_render_failure_rolls_back_final_approval(self, db, world, signature_png, monkeypatch):
        ts = machine.finalize(db, world.shift.id, world.crew_chief)
        machine.client_approve(db, ts.id, world.client_user, signature_png)

        def boom(data):
            raise RuntimeError("renderer exploded")

        monkeypatch.setattr(documents, "render_timesheet_pdf", boom)
        with pytest.raises(DocumentGenerationError):
            machine.manager_approve(db, ts.id, world.manager, signature_png)

        db.refresh(ts)
        assert ts.status == TimesheetStatus.PENDING_FINAL_APPROVAL.value
        assert ts.manager_signature_id is None
        assert db.query(PDFArtifact).count() == 0
        assert db.query(SignatureAttestation).filter(SignatureAttestation.approval_type == "manager").count() == 0
        shift = db.get(Shift, world.shift.id)
        db.refresh(shift)
        assert shift.status == "InProgress"
        assert "MANAGER_APPROVE" not in _actions(db, ts)

        monkeypatch.undo()
        ts = machine.manager_approve(db, ts.id, world.manager, signature_png)
        assert ts.status == TimesheetStatus.COMPLETED.value

    def test_render_timeout_rolls_back(self, db, world, signature_png, monkeypatch):
        ts = machine.finalize(db, world.shift.id, world.crew_chief)
        machine.client_approve(db, ts.id, world.client_user, signature_png)

        def slow(data):
            time_module.sleep(0.5)
            return b"%PDF-too-late"

        monkeypatch.setattr(documents, "render_timesheet_pdf", slow)
        monkeypatch.setattr(settings, "pdf_generation_timeout_s", 0.05)
        with pytest.raises(DocumentGenerationError):
            machine.manager_approve(db, ts.id, world.manager, signature_png)

        db.refresh(ts)
        assert ts.status == TimesheetStatus.PENDING_FINAL_APPROVAL.value
        assert db.query(PDFArtifact).count() == 0


class TestRejectAndResubmit:
    def test_rejection_is_kept_after_resubmit(self, db, world, signature_png):
        ts = machine.finalize(db, world.shift.id, world.crew_chief)
        machine.client_approve(db, ts.id, world.client_user, signature_png)
        ts = machine.reject(db, ts.id, world.manager, "Bob's second break is missing")

        assert ts.status == TimesheetStatus.REJECTED.value
        assert ts.rejected_by == world.manager.id

        ts = machine.resubmit(db, ts.id, world.crew_chief)
        assert ts.status == TimesheetStatus.PENDING_CLIENT_APPROVAL.value
        assert ts.cycle == 2
        assert ts.client_signature_id is None
        assert ts.client_approved_by is None
        assert ts.rejection_reason == "Bob's second break is missing"
        assert ts.rejected_by == world.manager.id
        assert db.query(PDFArtifact).count() == 0

        out = get_timesheet(db, ts.id, world.crew_chief)
        assert out.last_rejection.reason == "Bob's second break is missing"
        assert out.last_rejection.rejected_by_name == "Morgan Manager"

        history = get_history(db, ts.id, world.manager)
        assert [h.action for h in history] == ["FINALIZE", "CLIENT_APPROVE", "REJECT", "RESUBMIT"]
        assert history[2].context["reason"] == "Bob's second break is missing"

    def test_new_cycle_takes_fresh_signatures(self, db, world, signature_png):
        ts = machine.finalize(db, world.shift.id, world.crew_chief)
        first = machine.client_approve(db, ts.id, world.client_user, signature_png).client_signature_id
        machine.reject(db, ts.id, world.manager, "wrong job code")
        machine.resubmit(db, ts.id, world.crew_chief)

        second = machine.client_approve(db, ts.id, world.client_user, signature_png).client_signature_id
        assert second != first
        assert db.query(SignatureAttestation).filter(SignatureAttestation.timesheet_id == ts.id).count() == 2

        ts = machine.manager_approve(db, ts.id, world.manager, signature_png)
        assert ts.status == TimesheetStatus.COMPLETED.value
        assert ts.cycle == 2


class TestEvents:
    def test_event_emitted_after_commit(self, db, world):
        events = []
        ts = machine.finalize(db, world.shift.id, world.crew_chief, emit=events.append)
        assert len(events) == 1
        event = events[0]
        assert event.action == ACTION_FINALIZE
        assert event.timesheet_id == ts.id
        assert event.from_status is None
        assert event.to_status == TimesheetStatus.PENDING_CLIENT_APPROVAL.value

    def test_emit_failure_does_not_undo_transition(self, db, world, signature_png):
        def broken(event):
            raise RuntimeError("queue is down")

        ts = machine.finalize(db, world.shift.id, world.crew_chief, emit=broken)
        machine.client_approve(db, ts.id, world.client_user, signature_png, emit=broken)
        ts = machine.manager_approve(db, ts.id, world.manager, signature_png, emit=broken)
        assert ts.status == TimesheetStatus.COMPLETED.value

    def test_failed_transition_emits_nothing(self, db, world, signature_png):
        events = []
        ts = machine.finalize(db, world.shift.id, world.crew_chief)
        with pytest.raises(InvalidTransition):
            machine.manager_approve(db, ts.id, world.manager, signature_png, emit=events.append)
        assert events == []


class TestReads:
    def test_pdf_only_after_completion(self, db, world, signature_png):
        ts = machine.finalize(db, world.shift.id, world.crew_chief)
        with pytest.raises(InvalidTransition):
            get_timesheet_pdf(db, ts.id, world.client_user)

        machine.client_approve(db, ts.id, world.client_user, signature_png)
        machine.manager_approve(db, ts.id, world.manager, signature_png)
        artifact = get_timesheet_pdf(db, ts.id, world.client_user)
        assert artifact.content_type == "application/pdf"
        assert artifact.filename == "timesheet-acme-staging-co-2026-03-02.pdf"

    def test_pending_queue_by_role(self, db, world, signature_png):
        ts = machine.finalize(db, world.shift.id, world.crew_chief)

        assert [row.id for row in list_pending(db, world.client_user)] == [ts.id]
        assert list_pending(db, world.other_client_user) == []
        assert [row.id for row in list_pending(db, world.manager)] == [ts.id]
        assert [row.id for row in list_pending(db, world.crew_chief)] == [ts.id]
        assert list_pending(db, world.other_chief) == []
        assert list_pending(db, world.bob) == []

        machine.client_approve(db, ts.id, world.client_user, signature_png)
        assert list_pending(db, world.client_user) == []
        pending = list_pending(db, world.manager)
        assert pending[0].status == TimesheetStatus.PENDING_FINAL_APPROVAL.value
        assert pending[0].worker_count == 2

    def test_projection_reports_malformed_pair_instead_of_failing(self, db, world):
        ts = machine.finalize(db, world.shift.id, world.crew_chief)
        entry = db.query(TimeEntry).filter(TimeEntry.assigned_personnel_id == world.ana_assignment.id).one()
        entry.clock_out = utc(8)
        db.commit()

        out = get_timesheet(db, ts.id, world.manager)
        ana = next(p for p in out.personnel if p.employee_name == "Ana Rigger")
        assert ana.time_entries[0].malformed is True
        assert ana.total_minutes == 0
        assert str(out.total_hours) == "7.00"
