"""Appointment lookup against the portal's REST API.

Only the fields a call needs are read: the appointment id and who the
doctor and the patient are. The backend has served both flat
(``doctorId``/``patientId``) and nested (``doctor: {id|_id}``) shapes.
"""

import asyncio
from typing import Any, Dict, List, Optional

import aiohttp

import config
from call_state import CallRole
from config import log


def _id_of(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        value = value.get("id") or value.get("_id")
    if value is None or value == "":
        return None
    return str(value)


def appointment_id(appointment: Dict[str, Any]) -> Optional[str]:
    return _id_of(appointment.get("id") or appointment.get("_id"))


def doctor_id(appointment: Dict[str, Any]) -> Optional[str]:
    return _id_of(appointment.get("doctorId")) or _id_of(appointment.get("doctor"))


def patient_id(appointment: Dict[str, Any]) -> Optional[str]:
    return _id_of(appointment.get("patientId")) or _id_of(appointment.get("patient"))


def resolve_remote_user_id(appointment: Dict[str, Any], local_user_id: str) -> str:
    """The other party of the appointment. ValueError if we are not a party to it."""
    doctor, patient = doctor_id(appointment), patient_id(appointment)
    local_user_id = str(local_user_id)
    if local_user_id == doctor and patient:
        return patient
    if local_user_id == patient and doctor:
        return doctor
    raise ValueError(f"user {local_user_id} is not a party to appointment {appointment_id(appointment)}")


def role_for(appointment: Dict[str, Any], local_user_id: str) -> CallRole:
    # the doctor places the call, the patient joins it
    if str(local_user_id) == doctor_id(appointment):
        return CallRole.INITIATOR
    return CallRole.RESPONDER


async def fetch_appointments(session: aiohttp.ClientSession) -> List[Dict[str, Any]]:
    headers = {"Authorization": f"Bearer {config.BACKEND_TOKEN}"} if config.BACKEND_TOKEN else {}
    url = config.BACKEND_URL.rstrip("/") + "/api/appointments"
    try:
        async with session.get(url, headers=headers, timeout=aiohttp.ClientTimeout(total=10)) as resp:
            if resp.status != 200:
                log.warning("[API] GET /api/appointments -> %d", resp.status)
                return []
            data = await resp.json(content_type=None)
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
        log.warning("[API] fetching appointments failed: %s", e)
        return []
    if isinstance(data, dict):
        data = data.get("appointments", [])
    return [a for a in data if isinstance(a, dict)] if isinstance(data, list) else []


async def find_appointment(session: aiohttp.ClientSession, wanted_id: str) -> Optional[Dict[str, Any]]:
    for appointment in await fetch_appointments(session):
        if appointment_id(appointment) == str(wanted_id):
            return appointment
    return None
