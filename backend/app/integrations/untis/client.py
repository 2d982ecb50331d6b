"""
WebUntis API client.

Timetable and holiday data comes from the JSON-RPC endpoint; homework,
exams and absences come from the REST API, which needs a bearer token
issued for the JSON-RPC session.
"""

import asyncio
import logging
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Protocol

import aiohttp

from app.core.config import settings
from app.integrations.untis.errors import (
    BadCredentialsError, FetchFailedError, LoginFailedError
)
from app.utils.time import to_ymd

logger = logging.getLogger(__name__)

JSONRPC_PATH = "/WebUntis/jsonrpc.do"
TOKEN_PATH = "/WebUntis/api/token/new"
HOMEWORK_PATH = "/WebUntis/api/homeworks/lessons"
EXAMS_PATH = "/WebUntis/api/exams"
ABSENCES_PATH = "/WebUntis/api/classreg/absences/students"

BAD_CREDENTIALS_CODE = -8504
NO_RESULT_MARKERS = ("didn't return any result", "did not return any result", "no result")

ELEMENT_FIELDS = ["id", "name", "longname", "externalkey"]


class UntisRPCError(Exception):
    """Error object returned by the JSON-RPC endpoint."""

    def __init__(self, code: Optional[int], message: str):
        super().__init__(message)
        self.code = code
        self.message = message


def is_no_result(error: BaseException) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in NO_RESULT_MARKERS)


class UntisClient(Protocol):
    """Operations the timetable cache needs from an upstream session."""

    async def login(self) -> None: ...

    async def logout(self) -> None: ...

    async def close(self) -> None: ...

    async def get_lessons_for_range(self, start: date, end: date) -> List[Dict[str, Any]]: ...

    async def get_lessons_for_week(self, week_start: date) -> List[Dict[str, Any]]: ...

    async def get_homework_for_range(self, start: date, end: date) -> Dict[str, Any]: ...

    async def get_exams_for_range(self, start: date, end: date) -> List[Dict[str, Any]]: ...

    async def get_holidays(self) -> List[Dict[str, Any]]: ...

    async def get_absences_for_range(self, start: date, end: date) -> List[Dict[str, Any]]: ...


class WebUntisClient:
    """One authenticated WebUntis session for a single student."""

    def __init__(
        self,
        school: str,
        username: str,
        password: str,
        host: Optional[str] = None,
        client_name: Optional[str] = None,
        timeout: Optional[float] = None
    ):
        self.school = school
        self.username = username
        self._password = password
        self.host = host or settings.UNTIS_HOST
        self.client_name = client_name or settings.UNTIS_CLIENT_NAME
        self.timeout = timeout or settings.UNTIS_REQUEST_TIMEOUT_SECONDS

        self._http_session: Optional[aiohttp.ClientSession] = None
        self._request_id = 0
        self._bearer_token: Optional[str] = None

        self.session_id: Optional[str] = None
        self.person_id: Optional[int] = None
        self.person_type: Optional[int] = None
        self.klasse_id: Optional[int] = None

    @property
    def base_url(self) -> str:
        return f"https://{self.host}"

    async def __aenter__(self):
        await self.login()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.logout()

    def _ensure_http_session(self) -> aiohttp.ClientSession:
        if self._http_session is None or self._http_session.closed:
            self._http_session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={
                    "User-Agent": self.client_name,
                    "Accept": "application/json",
                },
            )
        return self._http_session

    async def close(self) -> None:
        if self._http_session is not None:
            await self._http_session.close()
            self._http_session = None

    async def _rpc(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        http = self._ensure_http_session()
        self._request_id += 1
        body = {
            "id": str(self._request_id),
            "method": method,
            "params": params or {},
            "jsonrpc": "2.0",
        }
        async with http.post(
            f"{self.base_url}{JSONRPC_PATH}",
            params={"school": self.school},
            json=body,
        ) as response:
            if response.status >= 400:
                text = await response.text()
                raise UntisRPCError(response.status, f"HTTP {response.status}: {text[:200]}")
            data = await response.json(content_type=None)

        error = data.get("error") if isinstance(data, dict) else None
        if isinstance(error, dict):
            raise UntisRPCError(error.get("code"), str(error.get("message") or "Unknown error"))
        if error:
            raise UntisRPCError(None, str(error))
        return data.get("result") if isinstance(data, dict) else None

    async def _rest(self, path: str, params: Dict[str, Any]) -> Any:
        http = self._ensure_http_session()
        if self._bearer_token is None:
            async with http.get(f"{self.base_url}{TOKEN_PATH}") as response:
                if response.status >= 400:
                    raise UntisRPCError(response.status, f"Token request failed: HTTP {response.status}")
                self._bearer_token = (await response.text()).strip()

        async with http.get(
            f"{self.base_url}{path}",
            params=params,
            headers={"Authorization": f"Bearer {self._bearer_token}"},
        ) as response:
            if response.status >= 400:
                text = await response.text()
                raise UntisRPCError(response.status, f"HTTP {response.status}: {text[:200]}")
            data = await response.json(content_type=None)
        return data.get("data", data) if isinstance(data, dict) else data

    async def login(self) -> None:
        try:
            result = await self._rpc("authenticate", {
                "user": self.username,
                "password": self._password,
                "client": self.client_name,
            })
        except UntisRPCError as e:
            if e.code == BAD_CREDENTIALS_CODE or "bad credentials" in e.message.lower():
                raise BadCredentialsError("Invalid Untis credentials", original_exception=e)
            raise LoginFailedError("Untis login failed", details={"code": e.code}, original_exception=e)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise LoginFailedError("Untis login failed", original_exception=e)

        if not isinstance(result, dict) or not result.get("sessionId"):
            raise LoginFailedError("Untis login returned no session")

        self.session_id = result["sessionId"]
        self.person_id = result.get("personId")
        self.person_type = result.get("personType")
        self.klasse_id = result.get("klasseId")
        logger.debug(f"Logged in to WebUntis as {self.username} on {self.host}")

    async def logout(self) -> None:
        try:
            if self.session_id:
                await self._rpc("logout")
        finally:
            self.session_id = None
            self._bearer_token = None
            await self.close()

    async def _fetch(self, label: str, call, empty: Any) -> Any:
        try:
            return await call
        except UntisRPCError as e:
            if is_no_result(e):
                logger.warning(f"WebUntis returned no result for {label}, treating as empty")
                return empty
            raise FetchFailedError("Untis fetch failed", details={"call": label, "code": e.code}, original_exception=e)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise FetchFailedError("Untis fetch failed", details={"call": label}, original_exception=e)

    async def get_lessons_for_range(self, start: date, end: date) -> List[Dict[str, Any]]:
        params = {
            "options": {
                "element": {"id": self.person_id, "type": self.person_type},
                "startDate": to_ymd(start),
                "endDate": to_ymd(end),
                "showInfo": True,
                "showSubstText": True,
                "showLsText": True,
                "showLsNumber": True,
                "showStudentgroup": True,
                "klasseFields": ELEMENT_FIELDS,
                "roomFields": ELEMENT_FIELDS,
                "subjectFields": ELEMENT_FIELDS,
                "teacherFields": ELEMENT_FIELDS,
            }
        }
        result = await self._fetch("getTimetable", self._rpc("getTimetable", params), [])
        return result or []

    async def get_lessons_for_week(self, week_start: date) -> List[Dict[str, Any]]:
        monday = week_start - timedelta(days=week_start.weekday())
        return await self.get_lessons_for_range(monday, monday + timedelta(days=6))

    async def get_homework_for_range(self, start: date, end: date) -> Dict[str, Any]:
        result = await self._fetch(
            "homeworks",
            self._rest(HOMEWORK_PATH, {"startDate": to_ymd(start), "endDate": to_ymd(end)}),
            {},
        )
        if isinstance(result, list):
            return {"homeworks": result, "lessons": []}
        return result or {}

    async def get_exams_for_range(self, start: date, end: date) -> List[Dict[str, Any]]:
        params = {
            "startDate": to_ymd(start),
            "endDate": to_ymd(end),
            "withGrades": "true",
        }
        if self.klasse_id is not None:
            params["klasseId"] = self.klasse_id
        if self.person_id is not None:
            params["studentId"] = self.person_id
        result = await self._fetch("exams", self._rest(EXAMS_PATH, params), [])
        if isinstance(result, dict):
            return result.get("exams") or []
        return result or []

    async def get_holidays(self) -> List[Dict[str, Any]]:
        result = await self._fetch("getHolidays", self._rpc("getHolidays"), [])
        return result or []

    async def get_absences_for_range(self, start: date, end: date) -> List[Dict[str, Any]]:
        params = {
            "startDate": to_ymd(start),
            "endDate": to_ymd(end),
            "excuseStatusId": -1,
        }
        if self.person_id is not None:
            params["studentId"] = self.person_id
        result = await self._fetch("absences", self._rest(ABSENCES_PATH, params), [])
        if isinstance(result, dict):
            return result.get("absences") or []
        return result or []
