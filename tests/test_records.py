import threading

import pytest

from recording_ingest import errors, models
from recording_ingest.locations import LocalLocation, RemoteLocation
from recording_ingest.records import attach_recording, get_authorized_call_record


class TestAuthorizedCallRecord:
    def test_owner_can_access(self, session_factory, call_record, telecaller):
        with session_factory() as db:
            record = get_authorized_call_record(db, call_record.id, telecaller)
            assert record.id == call_record.id

    def test_other_telecaller_is_forbidden(self, session_factory, call_record, other_telecaller):
        with session_factory() as db:
            with pytest.raises(errors.AuthorizationError):
                get_authorized_call_record(db, call_record.id, other_telecaller)

    def test_unknown_record(self, session_factory, telecaller):
        with session_factory() as db:
            with pytest.raises(errors.CallRecordNotFoundError):
                get_authorized_call_record(db, "missing", telecaller)

    def test_missing_id(self, session_factory, telecaller):
        with session_factory() as db:
            with pytest.raises(errors.ValidationError):
                get_authorized_call_record(db, "", telecaller)


class TestAttachRecording:
    def test_attach_sets_encoded_location(self, session_factory, call_record):
        with session_factory() as db:
            record = attach_recording(db, call_record.id, RemoteLocation("recordings/a.aac"))
            assert record.recording_path == "remote:recordings/a.aac"

    def test_second_attach_conflicts_and_keeps_first(self, session_factory, call_record):
        with session_factory() as db:
            attach_recording(db, call_record.id, LocalLocation("/data/first.aac"))
        with session_factory() as db:
            with pytest.raises(errors.ConflictError) as exc_info:
                attach_recording(db, call_record.id, LocalLocation("/data/second.aac"))
        assert exc_info.value.existing == "/data/first.aac"
        with session_factory() as db:
            assert db.get(models.CallRecord, call_record.id).recording_path == "/data/first.aac"

    def test_unknown_record(self, session_factory):
        with session_factory() as db:
            with pytest.raises(errors.CallRecordNotFoundError):
                attach_recording(db, "missing", LocalLocation("/data/a.aac"))

    def test_location_cannot_be_shared_between_records(self, session_factory, make_call_record):
        first, second = make_call_record(), make_call_record()
        with session_factory() as db:
            attach_recording(db, first.id, RemoteLocation("uploads/shared.aac"))
        with session_factory() as db:
            with pytest.raises(errors.LocationInUseError):
                attach_recording(db, second.id, RemoteLocation("uploads/shared.aac"))
        with session_factory() as db:
            assert db.get(models.CallRecord, second.id).recording_path is None

    def test_concurrent_attaches_have_one_winner(self, session_factory, call_record):
        winners = []
        conflicts = []
        barrier = threading.Barrier(8)

        def attempt(index):
            location = LocalLocation(f"/data/attempt_{index}.aac")
            barrier.wait()
            with session_factory() as db:
                try:
                    attach_recording(db, call_record.id, location)
                    winners.append(location.encode())
                except errors.ConflictError as exc:
                    conflicts.append(exc.existing)

        threads = [threading.Thread(target=attempt, args=(index,)) for index in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(winners) == 1
        assert len(conflicts) == 7
        with session_factory() as db:
            assert db.get(models.CallRecord, call_record.id).recording_path == winners[0]
