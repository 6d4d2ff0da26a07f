"""
Typed HTTP client for the CareBridge API.

    client = CareBridgeClient("http://localhost:8000")
    session = client.auth.login("ana@example.com", "secret1")
    client.use_token(session.token)
    nearby = client.hospitals.near(12.97, 77.59, max_distance=5000)

Every response is validated against the models in ``carebridge.schemas``.
Error statuses raise ``ApiError``; payloads that do not match the expected
schema raise ``ResponseSchemaError``.
"""
import datetime as dt
import logging
from typing import Any, Callable, Dict, List, Optional

import httpx
from pydantic import TypeAdapter, ValidationError

from .schemas import (
    AppointmentOut,
    AuthOut,
    ChatReplyOut,
    DoctorAvailabilityOut,
    DoctorOut,
    DoctorProfileOut,
    HospitalOut,
    MessageOut,
    QueueOut,
    UserOut,
)

TokenProvider = Callable[[], Optional[str]]


class ApiError(Exception):
    """Non-2xx response from the API"""

    def __init__(self, status_code: int, message: str):
        super().__init__(f"{status_code}: {message}")
        self.status_code = status_code
        self.message = message


class ResponseSchemaError(Exception):
    """Response body did not match the expected schema"""

    def __init__(self, path: str, errors: List[Dict[str, Any]]):
        super().__init__(f"Unexpected response from {path}: {len(errors)} validation error(s)")
        self.path = path
        self.errors = errors


def _redact(headers: Dict[str, str]) -> Dict[str, str]:
    return {
        key: ("<redacted>" if key.lower() == "authorization" else value)
        for key, value in headers.items()
    }


def _clean(params: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in params.items() if value is not None}


class CareBridgeClient:
    def __init__(
        self,
        base_url: str,
        token_provider: Optional[TokenProvider] = None,
        logger: Optional[logging.Logger] = None,
        timeout: float = 10.0,
        http: Optional[httpx.Client] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token_provider = token_provider
        self.logger = logger or logging.getLogger(__name__)
        self.http = http or httpx.Client(timeout=timeout)
        self._owns_http = http is None

        self.auth = AuthService(self)
        self.hospitals = HospitalService(self)
        self.doctors = DoctorService(self)
        self.appointments = AppointmentService(self)
        self.queues = QueueService(self)
        self.chat = ChatService(self)

    def use_token(self, token: Optional[str]) -> None:
        """Send a fixed bearer token from now on (None to stop)"""
        self.token_provider = (lambda: token) if token else None

    def close(self) -> None:
        if self._owns_http:
            self.http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def request(self, method: str, path: str, schema: Any, *,
                params: Optional[Dict[str, Any]] = None, json: Any = None) -> Any:
        headers = {"Accept": "application/json"}
        token = self.token_provider() if self.token_provider else None
        if token:
            headers["Authorization"] = f"Bearer {token}"

        url = f"{self.base_url}{path}"
        self.logger.debug("%s %s params=%s headers=%s", method, url, params, _redact(headers))
        response = self.http.request(method, url, params=_clean(params or {}), json=json, headers=headers)
        self.logger.debug("%s %s -> %s", method, url, response.status_code)

        if response.is_error:
            raise ApiError(response.status_code, self._error_message(response))

        try:
            body = response.json()
        except ValueError:
            raise ResponseSchemaError(path, [{"msg": "response body is not JSON"}])

        try:
            return TypeAdapter(schema).validate_python(body)
        except ValidationError as e:
            raise ResponseSchemaError(path, e.errors(include_url=False))

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or response.reason_phrase
        if isinstance(body, dict) and body.get("message"):
            return str(body["message"])
        return response.reason_phrase


class _Service:
    def __init__(self, client: CareBridgeClient):
        self.client = client

    def _call(self, method: str, path: str, schema: Any, **kwargs) -> Any:
        return self.client.request(method, path, schema, **kwargs)


class AuthService(_Service):
    def register(self, email: str, password: str, first_name: str, last_name: str,
                 role: str = "patient", **extra) -> AuthOut:
        payload = {"email": email, "password": password, "first_name": first_name,
                   "last_name": last_name, "role": role, **extra}
        return self._call("POST", "/api/auth/register", AuthOut, json=payload)

    def login(self, email: str, password: str) -> AuthOut:
        return self._call("POST", "/api/auth/login", AuthOut, json={"email": email, "password": password})

    def me(self) -> UserOut:
        return self._call("GET", "/api/auth/me", UserOut)

    def update_profile(self, **changes) -> UserOut:
        return self._call("PUT", "/api/auth/profile", UserOut, json=changes)


class HospitalService(_Service):
    def create(self, name: str, address: str, latitude: float, longitude: float, **extra) -> HospitalOut:
        payload = {"name": name, "address": address, "latitude": latitude, "longitude": longitude, **extra}
        return self._call("POST", "/api/hospitals", HospitalOut, json=payload)

    def list(self) -> List[HospitalOut]:
        return self._call("GET", "/api/hospitals", List[HospitalOut])

    def get(self, hospital_id: int) -> HospitalOut:
        return self._call("GET", f"/api/hospitals/{hospital_id}", HospitalOut)

    def update(self, hospital_id: int, **changes) -> HospitalOut:
        return self._call("PUT", f"/api/hospitals/{hospital_id}", HospitalOut, json=changes)

    def near(self, latitude: float, longitude: float, max_distance: Optional[float] = None) -> List[HospitalOut]:
        """max_distance is in meters"""
        params = {"latitude": latitude, "longitude": longitude, "maxDistance": max_distance}
        return self._call("GET", "/api/hospitals/near", List[HospitalOut], params=params)

    def doctors(self, hospital_id: int) -> List[DoctorOut]:
        return self._call("GET", f"/api/hospitals/{hospital_id}/doctors", List[DoctorOut])

    def assign_doctor(self, hospital_id: int, doctor_id: int) -> DoctorOut:
        return self._call("POST", f"/api/hospitals/{hospital_id}/doctors/{doctor_id}", DoctorOut)

    def remove_doctor(self, hospital_id: int, doctor_id: int) -> MessageOut:
        return self._call("DELETE", f"/api/hospitals/{hospital_id}/doctors/{doctor_id}", MessageOut)


class DoctorService(_Service):
    def profile(self) -> DoctorProfileOut:
        return self._call("GET", "/api/doctors/profile", DoctorProfileOut)

    def update_profile(self, **changes) -> DoctorProfileOut:
        return self._call("PUT", "/api/doctors/profile", DoctorProfileOut, json=changes)

    def set_availability(self, day: str, start_time: str, end_time: str,
                         is_available: bool = True) -> DoctorProfileOut:
        payload = {"start_time": start_time, "end_time": end_time, "is_available": is_available}
        return self._call("PUT", f"/api/doctors/profile/availability/{day}", DoctorProfileOut, json=payload)

    def add_qualification(self, degree: str, institution: str, year: int) -> DoctorProfileOut:
        payload = {"degree": degree, "institution": institution, "year": year}
        return self._call("POST", "/api/doctors/profile/qualifications", DoctorProfileOut, json=payload)

    def search(self, specialization: Optional[str] = None, date: Optional[dt.date] = None) -> List[DoctorOut]:
        params = {"specialization": specialization, "date": date.isoformat() if date else None}
        return self._call("GET", "/api/doctors/search", List[DoctorOut], params=params)

    def near(self, latitude: float, longitude: float, max_distance: Optional[float] = None,
             specialization: Optional[str] = None) -> List[DoctorOut]:
        params = {"latitude": latitude, "longitude": longitude,
                  "maxDistance": max_distance, "specialization": specialization}
        return self._call("GET", "/api/doctors/near", List[DoctorOut], params=params)

    def get(self, doctor_id: int) -> DoctorOut:
        return self._call("GET", f"/api/doctors/{doctor_id}", DoctorOut)

    def availability(self, doctor_id: int, date: dt.date) -> DoctorAvailabilityOut:
        return self._call("GET", f"/api/doctors/{doctor_id}/availability", DoctorAvailabilityOut,
                          params={"date": date.isoformat()})


class AppointmentService(_Service):
    def book(self, doctor_id: int, date: dt.date, start_time: str,
             reason: Optional[str] = None, symptoms: Optional[str] = None) -> AppointmentOut:
        payload = {"doctor_id": doctor_id, "date": date.isoformat(), "start_time": start_time,
                   "reason": reason, "symptoms": symptoms}
        return self._call("POST", "/api/appointments", AppointmentOut, json=payload)

    def list(self, upcoming: Optional[bool] = None, status: Optional[str] = None) -> List[AppointmentOut]:
        params = {"upcoming": None if upcoming is None else str(upcoming).lower(), "status": status}
        return self._call("GET", "/api/appointments", List[AppointmentOut], params=params)

    def get(self, appointment_id: int) -> AppointmentOut:
        return self._call("GET", f"/api/appointments/{appointment_id}", AppointmentOut)

    def doctor_queue(self, doctor_id: int, date: Optional[dt.date] = None) -> List[AppointmentOut]:
        params = {"date": date.isoformat() if date else None}
        return self._call("GET", f"/api/appointments/queue/{doctor_id}", List[AppointmentOut], params=params)

    def update_status(self, appointment_id: int, status: str, **details) -> AppointmentOut:
        return self._call("PATCH", f"/api/appointments/{appointment_id}/status", AppointmentOut,
                          json={"status": status, **details})

    def cancel(self, appointment_id: int, reason: Optional[str] = None) -> AppointmentOut:
        return self._call("DELETE", f"/api/appointments/{appointment_id}", AppointmentOut,
                          params={"reason": reason})

    def check_in(self, appointment_id: int) -> AppointmentOut:
        return self._call("POST", f"/api/appointments/{appointment_id}/check-in", AppointmentOut)


class QueueService(_Service):
    def create(self, hospital_id: int, doctor_id: int, date: dt.date,
               max_patients: Optional[int] = None) -> QueueOut:
        payload = _clean({"hospital_id": hospital_id, "doctor_id": doctor_id,
                          "date": date.isoformat(), "max_patients": max_patients})
        return self._call("POST", "/api/queues", QueueOut, json=payload)

    def get(self, queue_id: int) -> QueueOut:
        return self._call("GET", f"/api/queues/{queue_id}", QueueOut)

    def for_doctor(self, doctor_id: int, date: Optional[dt.date] = None) -> List[QueueOut]:
        params = {"date": date.isoformat() if date else None}
        return self._call("GET", f"/api/queues/doctor/{doctor_id}", List[QueueOut], params=params)

    def for_hospital(self, hospital_id: int) -> List[QueueOut]:
        return self._call("GET", f"/api/queues/hospital/{hospital_id}", List[QueueOut])

    def for_patient(self, patient_id: int) -> List[QueueOut]:
        return self._call("GET", f"/api/queues/patient/{patient_id}", List[QueueOut])

    def join(self, queue_id: int, reason: str, patient_id: Optional[int] = None,
             priority: int = 0) -> QueueOut:
        payload = _clean({"reason": reason, "patient_id": patient_id, "priority": priority})
        return self._call("POST", f"/api/queues/{queue_id}/patients", QueueOut, json=payload)

    def update_entry(self, queue_id: int, entry_id: int, status: str) -> QueueOut:
        return self._call("PUT", f"/api/queues/{queue_id}/patients/{entry_id}", QueueOut,
                          json={"status": status})

    def leave(self, queue_id: int, entry_id: int) -> QueueOut:
        return self._call("DELETE", f"/api/queues/{queue_id}/patients/{entry_id}", QueueOut)

    def set_status(self, queue_id: int, status: str) -> QueueOut:
        return self._call("PUT", f"/api/queues/{queue_id}/status", QueueOut, json={"status": status})


class ChatService(_Service):
    def send(self, message: str, history: Optional[List[Dict[str, str]]] = None) -> ChatReplyOut:
        return self._call("POST", "/api/chat", ChatReplyOut,
                          json={"message": message, "history": history or []})

    def analyze_report(self, report_text: str) -> ChatReplyOut:
        return self._call("POST", "/api/chat/analyze-report", ChatReplyOut,
                          json={"report_text": report_text})
