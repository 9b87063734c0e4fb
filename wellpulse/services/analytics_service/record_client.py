"""Client for the external record store REST API.

Fetches already-aggregated views and raw student records for a lookback
window. Any transport failure, timeout, non-2xx status or unparseable
body surfaces as ``UpstreamFetchError``; nothing is retried here.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from wellpulse.shared.models import (
    ClassRollup,
    EngagementRecord,
    RiskLevel,
    SchoolOverview,
    StudentHistory,
)
from wellpulse.shared.utils import hash_pii
from .config import RecordStoreConfig
from .exceptions import UpstreamFetchError

logger = logging.getLogger(__name__)

_ENVELOPE_KEYS = {"data", "success", "message", "status"}


@dataclass(frozen=True)
class StudentPage:
    students: Tuple[EngagementRecord, ...]
    total_pages: int
    page: int = 1
    total_students: int = 0


def _unwrap(body: Any) -> Any:
    """Strip a ``{"data": ...}`` envelope if the API added one."""
    if isinstance(body, dict) and "data" in body and set(body) <= _ENVELOPE_KEYS:
        return body["data"]
    return body


def _clean_params(params: Dict[str, Any]) -> Dict[str, str]:
    cleaned = {}
    for key, value in params.items():
        if value is None or value == "":
            continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        elif isinstance(value, RiskLevel):
            value = value.value
        cleaned[key] = str(value)
    return cleaned


class RecordStoreClient:
    """Async client for the analytics endpoints of the record store.

    Args:
        config: Connection settings (defaults to environment)
        session: Existing aiohttp session; one is created on first use
            otherwise and closed by ``close()``
    """

    def __init__(
        self,
        config: Optional[RecordStoreConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.config = config or RecordStoreConfig.from_env()
        self._session = session
        self._owns_session = session is None
        self.headers = {"Content-Type": "application/json"}
        if self.config.api_token:
            self.headers["Authorization"] = f"Bearer {self.config.api_token}"

        logger.info(
            "RECORD_STORE_CLIENT_INITIALIZED",
            extra={
                "base_url": self.config.base_url,
                "timeout_seconds": self.config.timeout_seconds,
                "authenticated": bool(self.config.api_token),
            }
        )

    async def __aenter__(self) -> "RecordStoreClient":
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.timeout_seconds)
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    @staticmethod
    async def _error_detail(response) -> str:
        try:
            body = await response.json()
        except (aiohttp.ContentTypeError, ValueError):
            return f"HTTP {response.status}"
        detail = body.get("detail") if isinstance(body, dict) else None
        if detail is None:
            return f"HTTP {response.status}"
        return detail if isinstance(detail, str) else str(detail)

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.config.base_url.rstrip('/')}{path}"
        session = self._get_session()

        try:
            async with session.get(
                url, params=_clean_params(params or {}), headers=self.headers
            ) as response:
                if response.status >= 400:
                    detail = await self._error_detail(response)
                    logger.error(
                        "UPSTREAM_FETCH_FAILED",
                        extra={"path": path, "status": response.status, "detail": detail}
                    )
                    raise UpstreamFetchError(detail, status=response.status)
                try:
                    body = await response.json()
                except ValueError as e:
                    raise self._malformed(path, e)
        except asyncio.TimeoutError:
            logger.error(
                "UPSTREAM_FETCH_TIMEOUT",
                extra={"path": path, "timeout_seconds": self.config.timeout_seconds}
            )
            raise UpstreamFetchError(f"Request to {path} timed out")
        except aiohttp.ClientError as e:
            logger.error(
                "UPSTREAM_FETCH_FAILED",
                extra={"path": path, "error": str(e)}
            )
            raise UpstreamFetchError(f"Request to {path} failed: {e}")

        return _unwrap(body)

    @staticmethod
    def _malformed(path: str, error: Exception) -> UpstreamFetchError:
        logger.error(
            "UPSTREAM_RESPONSE_MALFORMED",
            extra={"path": path, "error": str(error)}
        )
        return UpstreamFetchError(f"Malformed response from {path}: {error}")

    async def get_overview(self, school_id: str, days: int) -> SchoolOverview:
        path = "/analytics/overview"
        body = await self._get(path, {"school_id": school_id, "days": days})
        try:
            if isinstance(body, dict) and "school_id" not in body:
                body = dict(body, school_id=school_id)
            return SchoolOverview.from_dict(body)
        except (KeyError, TypeError, ValueError) as e:
            raise self._malformed(path, e)

    async def get_classes(
        self,
        school_id: str,
        days: int,
        search: Optional[str] = None,
    ) -> List[ClassRollup]:
        path = "/analytics/classes"
        body = await self._get(path, {"school_id": school_id, "days": days, "search": search})
        try:
            rows = body.get("classes", []) if isinstance(body, dict) else body
            return [ClassRollup.from_dict(row) for row in rows]
        except (KeyError, TypeError, ValueError) as e:
            raise self._malformed(path, e)

    async def get_class(
        self,
        class_id: str,
        days: int,
    ) -> Tuple[ClassRollup, List[EngagementRecord]]:
        """Class metrics and the class's student records."""
        path = f"/analytics/classes/{class_id}"
        body = await self._get(path, {"days": days})
        try:
            students = [
                EngagementRecord.from_dict(dict(row, class_id=row.get("class_id") or class_id))
                for row in body.get("students", [])
            ]
            return ClassRollup.from_dict(body), students
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise self._malformed(path, e)

    async def get_students(
        self,
        school_id: str,
        days: int,
        page: int = 1,
        search: Optional[str] = None,
        risk_level: Optional[RiskLevel] = None,
        limit: Optional[int] = None,
    ) -> StudentPage:
        path = "/analytics/students"
        body = await self._get(path, {
            "school_id": school_id,
            "days": days,
            "page": page,
            "search": search,
            "risk_level": risk_level,
            "limit": limit,
        })
        try:
            students = tuple(EngagementRecord.from_dict(row) for row in body.get("students", []))
            return StudentPage(
                students=students,
                total_pages=int(body.get("total_pages", 1)),
                page=int(body.get("page", page)),
                total_students=int(body.get("total_students", len(students))),
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise self._malformed(path, e)

    async def get_student(self, student_id: str, days: int) -> StudentHistory:
        path = f"/analytics/students/{student_id}"
        body = await self._get(path, {"days": days})
        try:
            history = StudentHistory.from_dict(dict(body, student_id=body.get("student_id") or student_id))
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise self._malformed(path, e)

        logger.info(
            "STUDENT_HISTORY_FETCHED",
            extra={
                "student_id_hash": hash_pii(student_id),
                "days": days,
                "log_days": len(history.daily_log),
            }
        )
        return history
