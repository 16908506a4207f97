from datetime import timedelta

from hospital_scheduling.core.config import settings
from hospital_scheduling.models import AppointmentStatus
from hospital_scheduling.services.booking_ledger import EVENT_TYPES
from hospital_scheduling.services.waitlist import SLOT_AVAILABLE_EVENT

from .conftest import DAY, DOCTOR_1, PATIENT_1, PATIENT_2, STAFF, UNLINKED_DOCTOR, at, auth_headers

API = "/api/v1"


def book(client, actor=PATIENT_1, hour=9, minute=0, length=30, doctor_id="doc-1"):
    starts_at = at(hour, minute)
    return client.post(
        f"{API}/appointments",
        json={
            "doctorId": doctor_id,
            "startsAt": starts_at.isoformat(),
            "endsAt": (starts_at + timedelta(minutes=length)).isoformat(),
            "reason": "Checkup",
        },
        headers=auth_headers(actor),
    )


def slot_availability(client, actor=PATIENT_1, **params):
    response = client.get(
        f"{API}/appointments/doc-1/slots",
        params={"day": DAY.isoformat(), **params},
        headers=auth_headers(actor),
    )
    assert response.status_code == 200
    return [slot["available"] for slot in response.json()]


class TestHealth:

    def test_health_check(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_policy_endpoint(self, client):
        response = client.get(f"{API}/appointments/policy", headers=auth_headers(PATIENT_1))

        assert response.status_code == 200
        assert response.json() == {"cancelCutoffHours": 12}


class TestAuthentication:

    def test_invalid_token_rejected(self, client):
        response = client.get(
            f"{API}/appointments/policy",
            headers={"Authorization": "Bearer not-a-token"},
        )

        assert response.status_code == 401

    def test_token_without_role_rejected(self, client):
        from hospital_scheduling.core.security import create_access_token

        token = create_access_token({"sub": "someone"})
        response = client.get(
            f"{API}/appointments/policy",
            headers={"Authorization": f"Bearer {token}"},
        )

        assert response.status_code == 401


class TestSlots:

    def test_day_without_bookings(self, client, working_hours):
        assert slot_availability(client) == [True] * 6

    def test_slot_fields_are_camel_case(self, client, working_hours):
        response = client.get(
            f"{API}/appointments/doc-1/slots",
            params={"day": DAY.isoformat()},
            headers=auth_headers(PATIENT_1),
        )

        first = response.json()[0]
        assert set(first) == {"doctorId", "startsAt", "endsAt", "available", "isPast"}
        assert first["doctorId"] == "doc-1"
        assert first["isPast"] is False

    def test_future_only_hides_past_slots(self, client, clock, working_hours):
        clock.set(at(10))

        assert slot_availability(client) == [True] * 6
        assert slot_availability(client, futureOnly="true") == [True] * 3

    def test_missing_day_is_a_validation_error(self, client, working_hours):
        response = client.get(f"{API}/appointments/doc-1/slots", headers=auth_headers(PATIENT_1))

        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"


class TestBookingFlow:

    def test_book_cancel_frees_slot(self, client, publisher, working_hours):
        """A cancelled booking gives its slot back."""
        booked = book(client)
        assert booked.status_code == 201
        body = booked.json()
        assert body["status"] == "BOOKED"
        assert body["patientId"] == "pat-1"
        assert slot_availability(client) == [False, True, True, True, True, True]

        cancelled = client.patch(
            f"{API}/appointments/{body['id']}/cancel",
            headers=auth_headers(PATIENT_1),
        )

        assert cancelled.status_code == 200
        assert cancelled.json()["status"] == "CANCELLED"
        assert slot_availability(client) == [True] * 6
        assert [kind for kind, _ in publisher.events] == [
            EVENT_TYPES[AppointmentStatus.BOOKED],
            EVENT_TYPES[AppointmentStatus.CANCELLED],
        ]

    def test_double_booking_conflicts(self, client, working_hours):
        assert book(client).status_code == 201

        response = book(client, actor=PATIENT_2)

        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "slot_conflict"
        assert body["retryable"] is True

    def test_overlapping_interval_conflicts(self, client, working_hours):
        assert book(client, hour=9, length=60).status_code == 201

        response = book(client, actor=PATIENT_2, hour=9, minute=30)

        assert response.status_code == 409

    def test_end_before_start_rejected(self, client, working_hours):
        response = client.post(
            f"{API}/appointments",
            json={
                "doctorId": "doc-1",
                "startsAt": at(10).isoformat(),
                "endsAt": at(9).isoformat(),
            },
            headers=auth_headers(PATIENT_1),
        )

        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    def test_booking_in_the_past_rejected(self, client, clock, working_hours):
        clock.set(at(11))

        response = book(client, hour=9)

        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    def test_patient_cannot_book_for_someone_else(self, client, working_hours):
        response = client.post(
            f"{API}/appointments",
            json={
                "doctorId": "doc-1",
                "patientId": "pat-2",
                "startsAt": at(9).isoformat(),
                "endsAt": at(9, 30).isoformat(),
            },
            headers=auth_headers(PATIENT_1),
        )

        assert response.status_code == 403
        assert response.json()["error"] == "forbidden"

    def test_staff_books_on_behalf(self, client, working_hours):
        response = client.post(
            f"{API}/appointments",
            json={
                "doctorId": "doc-1",
                "patientId": "pat-9",
                "startsAt": at(9).isoformat(),
                "endsAt": at(9, 30).isoformat(),
            },
            headers=auth_headers(STAFF),
        )

        assert response.status_code == 201
        assert response.json()["patientId"] == "pat-9"

    def test_unknown_appointment(self, client):
        response = client.patch(f"{API}/appointments/missing/cancel", headers=auth_headers(PATIENT_1))

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_other_patients_appointment_is_forbidden(self, client, working_hours):
        appointment_id = book(client).json()["id"]

        response = client.get(f"{API}/appointments/{appointment_id}", headers=auth_headers(PATIENT_2))

        assert response.status_code == 403


class TestCancellation:

    def test_cancel_inside_cutoff(self, client, clock, working_hours):
        appointment_id = book(client).json()["id"]
        clock.set(at(0))

        response = client.patch(f"{API}/appointments/{appointment_id}/cancel", headers=auth_headers(PATIENT_1))

        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "cutoff_violation"
        assert body["details"]["cancelCutoffHours"] == 12

    def test_staff_cancel_inside_cutoff(self, client, clock, working_hours):
        appointment_id = book(client).json()["id"]
        clock.set(at(0))

        response = client.patch(f"{API}/appointments/{appointment_id}/cancel", headers=auth_headers(STAFF))

        assert response.status_code == 200

    def test_cancel_twice(self, client, working_hours):
        appointment_id = book(client).json()["id"]
        client.patch(f"{API}/appointments/{appointment_id}/cancel", headers=auth_headers(PATIENT_1))

        response = client.patch(f"{API}/appointments/{appointment_id}/cancel", headers=auth_headers(PATIENT_1))

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_transition"

    def test_cancel_offers_slot_to_waitlist(self, client, publisher, working_hours):
        appointment_id = book(client).json()["id"]
        joined = client.post(
            f"{API}/waitlist",
            json={"doctorId": "doc-1", "desiredDate": DAY.isoformat()},
            headers=auth_headers(PATIENT_2),
        )
        assert joined.status_code == 201

        client.patch(f"{API}/appointments/{appointment_id}/cancel", headers=auth_headers(PATIENT_1))

        offers = publisher.of_type(SLOT_AVAILABLE_EVENT)
        assert len(offers) == 1
        assert offers[0]["patientId"] == "pat-2"
        assert offers[0]["waitlistEntryId"] == joined.json()["id"]


class TestReschedule:

    def test_reschedule_moves_booking(self, client, working_hours):
        original = book(client).json()

        response = client.patch(
            f"{API}/appointments/{original['id']}/reschedule",
            json={"startsAt": at(11).isoformat(), "endsAt": at(11, 30).isoformat()},
            headers=auth_headers(PATIENT_1),
        )

        assert response.status_code == 200
        replacement = response.json()
        assert replacement["id"] != original["id"]
        assert replacement["status"] == "BOOKED"
        assert replacement["previousAppointmentId"] == original["id"]
        assert slot_availability(client) == [True, True, True, True, False, True]

        retired = client.get(f"{API}/appointments/{original['id']}", headers=auth_headers(PATIENT_1))
        assert retired.json()["status"] == "RESCHEDULED"

    def test_reschedule_into_taken_slot(self, client, working_hours):
        original = book(client).json()
        assert book(client, actor=PATIENT_2, hour=10).status_code == 201

        response = client.patch(
            f"{API}/appointments/{original['id']}/reschedule",
            json={"startsAt": at(10).isoformat(), "endsAt": at(10, 30).isoformat()},
            headers=auth_headers(PATIENT_1),
        )

        assert response.status_code == 409
        assert response.json()["error"] == "slot_conflict"
        unchanged = client.get(f"{API}/appointments/{original['id']}", headers=auth_headers(PATIENT_1))
        assert unchanged.json()["status"] == "BOOKED"


class TestReview:

    def test_doctor_approves(self, client, publisher, working_hours):
        appointment_id = book(client).json()["id"]

        response = client.patch(f"{API}/appointments/{appointment_id}/approve", headers=auth_headers(DOCTOR_1))

        assert response.status_code == 200
        assert response.json()["status"] == "CONFIRMED"
        assert len(publisher.of_type("billing.build_requested")) == 1

    def test_doctor_rejects(self, client, working_hours):
        appointment_id = book(client).json()["id"]

        response = client.patch(f"{API}/appointments/{appointment_id}/reject", headers=auth_headers(DOCTOR_1))

        assert response.status_code == 200
        assert response.json()["status"] == "REJECTED"
        assert slot_availability(client)[0] is True

    def test_patient_cannot_approve(self, client, working_hours):
        appointment_id = book(client).json()["id"]

        response = client.patch(f"{API}/appointments/{appointment_id}/approve", headers=auth_headers(PATIENT_1))

        assert response.status_code == 403


    def test_unlinked_doctor_token_is_forbidden(self, client, clock, working_hours):
        appointment_id = book(client).json()["id"]
        clock.set(at(8, 50))

        cancelled = client.patch(f"{API}/appointments/{appointment_id}/cancel", headers=auth_headers(UNLINKED_DOCTOR))
        listed = client.get(f"{API}/appointments", headers=auth_headers(UNLINKED_DOCTOR))

        assert cancelled.status_code == 403
        assert cancelled.json()["error"] == "forbidden"
        assert listed.status_code == 403
        kept = client.get(f"{API}/appointments/{appointment_id}", headers=auth_headers(PATIENT_1))
        assert kept.json()["status"] == "BOOKED"


class TestListing:

    def test_patient_sees_own_appointments(self, client, working_hours):
        book(client, hour=9)
        book(client, actor=PATIENT_2, hour=10)

        response = client.get(f"{API}/appointments", headers=auth_headers(PATIENT_1))

        assert response.status_code == 200
        assert [a["patientId"] for a in response.json()] == ["pat-1"]

    def test_staff_filters_by_status(self, client, working_hours):
        first = book(client, hour=9).json()["id"]
        book(client, actor=PATIENT_2, hour=10)
        client.patch(f"{API}/appointments/{first}/cancel", headers=auth_headers(PATIENT_1))

        response = client.get(
            f"{API}/appointments",
            params={"status": "CANCELLED"},
            headers=auth_headers(STAFF),
        )

        assert [a["id"] for a in response.json()] == [first]


class TestWaitlistApi:

    def test_join_is_idempotent(self, client):
        payload = {"doctorId": "doc-1", "desiredDate": DAY.isoformat()}

        first = client.post(f"{API}/waitlist", json=payload, headers=auth_headers(PATIENT_1))
        second = client.post(f"{API}/waitlist", json=payload, headers=auth_headers(PATIENT_1))

        assert first.status_code == 201
        assert second.status_code == 200
        assert second.json()["id"] == first.json()["id"]

    def test_list_and_leave(self, client):
        entry = client.post(
            f"{API}/waitlist",
            json={"doctorId": "doc-1", "desiredDate": DAY.isoformat()},
            headers=auth_headers(PATIENT_1),
        ).json()

        listed = client.get(f"{API}/waitlist", headers=auth_headers(PATIENT_1))
        assert [e["id"] for e in listed.json()] == [entry["id"]]

        removed = client.delete(f"{API}/waitlist/{entry['id']}", headers=auth_headers(PATIENT_1))
        assert removed.status_code == 200
        assert removed.json() == {"ok": True}
        assert client.get(f"{API}/waitlist", headers=auth_headers(PATIENT_1)).json() == []

    def test_leave_other_patients_entry(self, client):
        entry = client.post(
            f"{API}/waitlist",
            json={"doctorId": "doc-1", "desiredDate": DAY.isoformat()},
            headers=auth_headers(PATIENT_1),
        ).json()

        response = client.delete(f"{API}/waitlist/{entry['id']}", headers=auth_headers(PATIENT_2))

        assert response.status_code == 404


class TestWorkingHours:

    def test_staff_replaces_template(self, client):
        ranges = [
            {"weekday": DAY.weekday(), "startTime": "09:00:00", "endTime": "10:00:00"},
            {"weekday": DAY.weekday(), "startTime": "14:00:00", "endTime": "15:00:00"},
        ]

        response = client.put(
            f"{API}/doctors/doc-1/working-hours",
            json={"ranges": ranges},
            headers=auth_headers(STAFF),
        )

        assert response.status_code == 200
        assert len(response.json()["ranges"]) == 2
        fetched = client.get(f"{API}/doctors/doc-1/working-hours", headers=auth_headers(PATIENT_1))
        assert fetched.json()["doctorId"] == "doc-1"
        assert slot_availability(client) == [True] * 4

    def test_patient_cannot_edit_template(self, client):
        response = client.put(
            f"{API}/doctors/doc-1/working-hours",
            json={"ranges": []},
            headers=auth_headers(PATIENT_1),
        )

        assert response.status_code == 403

    def test_inverted_range_rejected(self, client):
        response = client.put(
            f"{API}/doctors/doc-1/working-hours",
            json={"ranges": [{"weekday": 1, "startTime": "12:00:00", "endTime": "09:00:00"}]},
            headers=auth_headers(STAFF),
        )

        assert response.status_code == 400

    def test_overlapping_ranges_rejected(self, client, working_hours):
        weekday = DAY.weekday()
        response = client.put(
            f"{API}/doctors/doc-1/working-hours",
            json={"ranges": [
                {"weekday": weekday, "startTime": "09:00:00", "endTime": "10:00:00"},
                {"weekday": weekday, "startTime": "09:15:00", "endTime": "10:15:00"},
            ]},
            headers=auth_headers(STAFF),
        )

        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"
        assert slot_availability(client) == [True] * 6


class TestScheduleOverrides:

    def test_staff_blocks_an_hour(self, client, working_hours):
        response = client.post(
            f"{API}/doctors/doc-1/overrides",
            json={"startsAt": at(10).isoformat(), "endsAt": at(11).isoformat(), "reason": "Clinic closure"},
            headers=auth_headers(STAFF),
        )

        assert response.status_code == 201
        body = response.json()
        assert body["isBlocked"] is True
        assert body["reason"] == "Clinic closure"
        assert slot_availability(client) == [True] * 4

        listed = client.get(
            f"{API}/doctors/doc-1/overrides",
            params={"day": DAY.isoformat()},
            headers=auth_headers(PATIENT_1),
        )
        assert [o["id"] for o in listed.json()] == [body["id"]]

        removed = client.delete(f"{API}/doctors/doc-1/overrides/{body['id']}", headers=auth_headers(STAFF))
        assert removed.json() == {"ok": True}
        assert slot_availability(client) == [True] * 6

    def test_patient_cannot_block_time(self, client, working_hours):
        response = client.post(
            f"{API}/doctors/doc-1/overrides",
            json={"startsAt": at(10).isoformat(), "endsAt": at(11).isoformat()},
            headers=auth_headers(PATIENT_1),
        )

        assert response.status_code == 403
        assert slot_availability(client) == [True] * 6

    def test_doctor_cannot_remove_override(self, client, working_hours):
        created = client.post(
            f"{API}/doctors/doc-1/overrides",
            json={"startsAt": at(10).isoformat(), "endsAt": at(11).isoformat()},
            headers=auth_headers(STAFF),
        ).json()

        response = client.delete(f"{API}/doctors/doc-1/overrides/{created['id']}", headers=auth_headers(DOCTOR_1))

        assert response.status_code == 403

    def test_remove_unknown_override(self, client):
        response = client.delete(f"{API}/doctors/doc-1/overrides/999", headers=auth_headers(STAFF))

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"


class TestRateLimiting:

    def test_write_requests_are_limited(self, client, monkeypatch):
        monkeypatch.setattr(settings, "RATE_LIMIT_REQUESTS", 2)
        payload = {"doctorId": "doc-1", "desiredDate": DAY.isoformat()}

        codes = [
            client.post(f"{API}/waitlist", json=payload, headers=auth_headers(PATIENT_1)).status_code
            for _ in range(3)
        ]

        assert codes == [201, 200, 429]
