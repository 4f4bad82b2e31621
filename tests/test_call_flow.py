import asyncio

import pytest

from agent import CallBusyError
from call_state import CallStatus
from conftest import MINIMAL_SDP, FakePeerConnection, MediaFactory, wait_for
from media import MediaPermissionError
from signaling import (
    CALL_ACCEPTED,
    CALL_ENDED,
    CALL_PREPARE,
    CALL_REJECTED,
    DISCONNECT,
    INCOMING_CALL,
    NEGO_DONE,
    NEGO_NEEDED,
    USER_CALL,
)


async def connect_both(doctor, patient):
    """Drive both fake connections to ICE connected and wait for the sessions to follow."""
    doctor.active.peer.pc.set_ice("connected")
    patient.active.peer.pc.set_ice("connected")
    await wait_for(lambda: doctor.active.session.status is CallStatus.CONNECTED)
    await wait_for(lambda: patient.active.session.status is CallStatus.CONNECTED)


async def established(make_agent, hub):
    doctor = await make_agent("doctor-1")
    patient = await make_agent("patient-1")
    await doctor.call("apt-1", "patient-1")
    await wait_for(lambda: patient.active is not None and patient.active.session.status is CallStatus.CONNECTING)
    await wait_for(lambda: hub.events_from("patient-1").count(NEGO_DONE) == 1)
    await wait_for(lambda: not doctor.active.session.negotiation.in_progress)
    await connect_both(doctor, patient)
    return doctor, patient


# --- full handshake ---

class TestHandshake:
    async def test_call_reaches_connected_on_both_sides(self, make_agent, hub):
        doctor, patient = await established(make_agent, hub)

        assert hub.events_from("doctor-1")[:2] == [USER_CALL, NEGO_NEEDED]
        assert hub.events_from("patient-1")[:2] == [CALL_ACCEPTED, NEGO_DONE]
        assert doctor.active.peer.signaling_state == "stable"
        assert patient.active.peer.signaling_state == "stable"
        assert doctor.active.session.started_at is not None

    async def test_tracks_attached_after_first_round(self, make_agent, hub):
        doctor, patient = await established(make_agent, hub)
        assert [t.kind for t in doctor.active.peer.pc.tracks] == ["audio", "video"]
        assert [t.kind for t in patient.active.peer.pc.tracks] == ["audio", "video"]

    async def test_hangup_ends_both_sides(self, make_agent, hub):
        doctor, patient = await established(make_agent, hub)
        call_d, call_p = doctor.active, patient.active
        await doctor.hangup()
        await wait_for(lambda: call_p.session.is_ended)
        assert call_d.session.end_reason == "hangup"
        assert call_p.session.end_reason == "remote-ended"
        assert doctor.active is None and patient.active is None
        assert call_p.peer.closed
        assert hub.events_from("patient-1").count(CALL_ENDED) == 0

    async def test_end_twice_notifies_once(self, make_agent, hub):
        doctor, patient = await established(make_agent, hub)
        call = doctor.active
        await call.end("hangup")
        await call.end("hangup")
        await call.hangup()
        assert hub.events_from("doctor-1").count(CALL_ENDED) == 1
        assert call.session.end_reason == "hangup"


# --- rejection and media ---

class TestRejection:
    async def test_rejected_call_ends_from_ringing(self, make_agent, hub):
        declined = MediaFactory()
        doctor = await make_agent("doctor-1")
        await make_agent("patient-1", media=declined, accept_call=lambda s: False)
        seen = []
        call = await doctor.call("apt-1", "patient-1")
        call.machine.on_state_changed = lambda s: seen.append(s.status)

        await wait_for(lambda: call.session.is_ended)
        assert seen == [CallStatus.ENDED]
        assert call.session.end_reason == "declined"
        assert FakePeerConnection.instances[0].tracks == []
        assert declined.calls == 0
        assert hub.events_from("patient-1") == [CALL_REJECTED]

    async def test_initiator_hangup_while_responder_is_asked(self, make_agent, hub):
        answered = asyncio.Event()
        prompt = []

        async def ask(session):
            prompt.append("open")
            try:
                await answered.wait()
            except asyncio.CancelledError:
                prompt.append("closed")
                raise
            return True

        media = MediaFactory()
        doctor = await make_agent("doctor-1")
        patient = await make_agent("patient-1", media=media, accept_call=ask)
        call = await doctor.call("apt-1", "patient-1")
        await wait_for(lambda: prompt == ["open"])
        ringing = patient.active
        assert ringing.session.status is CallStatus.RINGING

        await call.hangup()
        await wait_for(lambda: ringing.session.is_ended)
        await wait_for(lambda: prompt == ["open", "closed"])
        assert ringing.session.end_reason == "remote-ended"
        assert patient.active is None

        answered.set()
        await asyncio.sleep(0.05)
        assert media.calls == 0
        assert CALL_ACCEPTED not in hub.events_from("patient-1")

    async def test_connection_loss_while_responder_is_asked(self, make_agent, hub):
        never = asyncio.Event()

        async def ask(session):
            await never.wait()
            return True

        doctor = await make_agent("doctor-1")
        patient = await make_agent("patient-1", accept_call=ask)
        await doctor.call("apt-1", "patient-1")
        await wait_for(lambda: patient.active is not None and patient.active.session.status is CallStatus.RINGING)
        ringing = patient.active
        ringing.peer.emit("connectivity", "failed")
        await wait_for(lambda: ringing.session.is_ended)
        assert ringing.session.end_reason == "connection-failed"

    async def test_async_accept_policy(self, make_agent, hub):
        async def ask(session):
            await asyncio.sleep(0)
            return session.appointment_id == "apt-1"

        doctor = await make_agent("doctor-1")
        await make_agent("patient-1", accept_call=ask)
        call = await doctor.call("apt-1", "patient-1")
        await wait_for(lambda: call.session.status is CallStatus.CONNECTING)

    async def test_initiator_media_denied_stays_idle(self, make_agent, hub):
        doctor = await make_agent("doctor-1", media=MediaFactory(MediaPermissionError("denied")))
        await make_agent("patient-1")
        with pytest.raises(MediaPermissionError):
            await doctor.call("apt-1", "patient-1")
        assert doctor.active is None
        assert doctor.history[-1].status is CallStatus.IDLE
        assert FakePeerConnection.instances == []
        assert hub.sent == []

    async def test_responder_media_denied_rejects(self, make_agent, hub):
        doctor = await make_agent("doctor-1")
        await make_agent("patient-1", media=MediaFactory(MediaPermissionError("denied")))
        call = await doctor.call("apt-1", "patient-1")
        await wait_for(lambda: call.session.is_ended)
        assert call.session.end_reason == "media-unavailable"


# --- renegotiation ---

class TestRenegotiation:
    async def test_two_rapid_triggers_give_one_offer(self, make_agent, hub):
        doctor, patient = await established(make_agent, hub)
        pc = doctor.active.peer.pc
        offers = pc.offers
        sent = hub.events_from("doctor-1").count(NEGO_NEEDED)

        doctor.active.peer.emit("negotiationneeded")
        doctor.active.peer.emit("negotiationneeded")
        await wait_for(lambda: hub.events_from("patient-1").count(NEGO_DONE) == 2)
        await wait_for(lambda: not doctor.active.session.negotiation.in_progress)

        assert pc.offers == offers + 1
        assert hub.events_from("doctor-1").count(NEGO_NEEDED) == sent + 1
        assert pc.signalingState == "stable"

    async def test_responder_may_renegotiate_once_connected(self, make_agent, hub):
        doctor, patient = await established(make_agent, hub)
        patient.active.peer.emit("negotiationneeded")
        await wait_for(lambda: hub.events_from("doctor-1").count(NEGO_DONE) == 1)
        await wait_for(lambda: patient.active.peer.signaling_state == "stable")
        assert not patient.active.session.negotiation.in_progress

    async def test_offer_while_not_stable_is_dropped(self, make_agent, hub):
        doctor, patient = await established(make_agent, hub)
        pc = patient.active.peer.pc
        pc.signalingState = "have-local-offer"
        await hub.channels["patient-1"].dispatch(
            NEGO_NEEDED, {"from": "doctor-1", "appointmentId": "apt-1", "offer": {"type": "offer", "sdp": "v=0"}}
        )
        await asyncio.sleep(0.05)
        assert patient.active.session.status is CallStatus.CONNECTED
        assert hub.events_from("patient-1").count(NEGO_DONE) == 1

    async def test_malformed_answer_is_discarded(self, make_agent, hub):
        doctor, patient = await established(make_agent, hub)
        await hub.channels["doctor-1"].dispatch(
            CALL_ACCEPTED, {"from": "patient-1", "appointmentId": "apt-1", "ans": "garbage"}
        )
        await hub.channels["doctor-1"].dispatch(
            "peer:nego:final", {"from": "patient-1", "appointmentId": "apt-1", "ans": None}
        )
        await asyncio.sleep(0.05)
        assert doctor.active.session.status is CallStatus.CONNECTED


# --- watchdog ---

class TestConnectivity:
    async def test_blip_within_grace_keeps_call(self, make_agent, hub):
        doctor, patient = await established(make_agent, hub)
        pc = doctor.active.peer.pc
        pc.set_ice("disconnected")
        pc.set_ice("connected")
        await asyncio.sleep(0.2)
        assert doctor.active.session.status is CallStatus.CONNECTED

    async def test_no_recovery_ends_exactly_once(self, make_agent, hub):
        doctor, patient = await established(make_agent, hub)
        call = doctor.active
        call.peer.pc.set_ice("disconnected")
        await wait_for(lambda: call.session.is_ended)
        await asyncio.sleep(0.1)
        assert call.session.end_reason == "connection-lost"
        assert hub.events_from("doctor-1").count(CALL_ENDED) == 1
        await wait_for(lambda: patient.active is None)

    async def test_failed_ends_immediately(self, make_agent, hub):
        doctor, patient = await established(make_agent, hub)
        call = doctor.active
        call.peer.pc.set_ice("failed")
        await wait_for(lambda: call.session.is_ended)
        assert call.session.end_reason == "connection-failed"

    async def test_connectivity_before_connecting_is_remembered(self, make_agent, hub):
        doctor = await make_agent("doctor-1")
        await make_agent("patient-1")
        call = await doctor.call("apt-1", "patient-1")
        call.peer.pc.set_ice("connected")
        await wait_for(lambda: call.session.status is CallStatus.CONNECTED)


# --- one call at a time ---

class TestBusy:
    async def test_second_incoming_call_rejected_busy(self, make_agent, hub):
        doctor, patient = await established(make_agent, hub)
        other = await make_agent("doctor-2")
        intruder = await other.call("apt-2", "patient-1")
        await wait_for(lambda: intruder.session.is_ended)
        assert intruder.session.end_reason == "busy"
        assert patient.active.session.appointment_id == "apt-1"
        assert patient.active.session.status is CallStatus.CONNECTED

    async def test_local_call_while_active_raises(self, make_agent, hub):
        doctor, patient = await established(make_agent, hub)
        with pytest.raises(CallBusyError):
            await doctor.call("apt-9", "someone")
        with pytest.raises(CallBusyError):
            await patient.join("apt-9", "someone")

    async def test_events_for_other_calls_dropped(self, make_agent, hub):
        doctor, patient = await established(make_agent, hub)
        await hub.channels["doctor-1"].dispatch(CALL_ENDED, {"from": "patient-1", "appointmentId": "apt-other"})
        await hub.channels["doctor-1"].dispatch(CALL_ENDED, {"from": "mallory", "appointmentId": "apt-1"})
        await asyncio.sleep(0.05)
        assert doctor.active.session.status is CallStatus.CONNECTED


# --- join / call:prepare ---

class TestPrepare:
    async def test_joiner_gets_fresh_offer_from_ringing_initiator(self, make_agent, hub):
        doctor = await make_agent("doctor-1")
        call = await doctor.call("apt-1", "patient-1")
        assert call.session.status is CallStatus.RINGING
        first_pc = call.peer.pc

        patient = await make_agent("patient-1", accept_call=lambda s: False)
        joined = await patient.join("apt-1", "doctor-1")

        await wait_for(lambda: joined.session.status is CallStatus.CONNECTING)
        assert first_pc.closed
        assert call.peer.pc is not first_pc
        assert hub.events_from("doctor-1").count(USER_CALL) == 2
        assert hub.events_from("patient-1")[0] == CALL_PREPARE

    async def test_prepare_after_answer_is_dropped(self, make_agent, hub):
        doctor, patient = await established(make_agent, hub)
        pc = doctor.active.peer.pc
        await hub.channels["doctor-1"].dispatch(CALL_PREPARE, {"from": "patient-1", "appointmentId": "apt-1"})
        await asyncio.sleep(0.05)
        assert doctor.active.peer.pc is pc
        assert hub.events_from("doctor-1").count(USER_CALL) == 1

    async def test_answer_to_superseded_offer_dropped(self, make_agent, hub):
        doctor = await make_agent("doctor-1")
        call = await doctor.call("apt-1", "patient-1")
        channel = hub.channels["doctor-1"]
        await channel.dispatch(CALL_PREPARE, {"from": "patient-1", "appointmentId": "apt-1"})
        await wait_for(lambda: hub.events_from("doctor-1").count(USER_CALL) == 2)
        offers = [data for sender, event, data in hub.sent if event == USER_CALL]
        assert [o["epoch"] for o in offers] == [1, 2]

        answer = {"type": "answer", "sdp": MINIMAL_SDP}
        await channel.dispatch(CALL_ACCEPTED, {"from": "patient-1", "appointmentId": "apt-1", "ans": answer, "epoch": 1})
        await asyncio.sleep(0.05)
        assert call.session.status is CallStatus.RINGING
        assert call.peer.pc.remoteDescription is None

        await channel.dispatch(CALL_ACCEPTED, {"from": "patient-1", "appointmentId": "apt-1", "ans": answer, "epoch": 2})
        await wait_for(lambda: call.session.status is CallStatus.CONNECTING)

    async def test_responder_answers_resent_offer_again(self, make_agent, hub):
        patient = await make_agent("patient-1")
        joined = await patient.join("apt-1", "doctor-1")
        channel = hub.channels["patient-1"]
        offer = {"type": "offer", "sdp": MINIMAL_SDP}

        await channel.dispatch(INCOMING_CALL, {"from": "doctor-1", "appointmentId": "apt-1", "offer": offer, "epoch": 1})
        await wait_for(lambda: joined.session.status is CallStatus.CONNECTING)
        first_pc = joined.peer.pc

        await channel.dispatch(INCOMING_CALL, {"from": "doctor-1", "appointmentId": "apt-1", "offer": offer, "epoch": 2})
        await wait_for(lambda: hub.events_from("patient-1").count(CALL_ACCEPTED) == 2)
        answers = [data for sender, event, data in hub.sent if event == CALL_ACCEPTED]
        assert [a["epoch"] for a in answers] == [1, 2]
        assert first_pc.closed
        assert joined.peer.pc is not first_pc
        assert [t.kind for t in joined.peer.pc.tracks] == ["audio", "video"]

        # the same offer delivered twice is not answered twice
        await channel.dispatch(INCOMING_CALL, {"from": "doctor-1", "appointmentId": "apt-1", "offer": offer, "epoch": 2})
        await asyncio.sleep(0.05)
        assert hub.events_from("patient-1").count(CALL_ACCEPTED) == 2


# --- signaling loss ---

async def test_signaling_loss_ends_active_call(make_agent, hub):
    doctor, patient = await established(make_agent, hub)
    call = patient.active
    channel = hub.channels["patient-1"]
    channel.online = False
    await channel.dispatch(DISCONNECT, {})
    assert call.session.is_ended
    assert call.session.end_reason == "signaling-lost"
    assert call.peer.closed
