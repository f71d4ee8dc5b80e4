from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from tripauth.config import Settings
from tripauth.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0
REFRESH_COOKIE = "refresh_token"


class ApiError(Exception):
    """Non-2xx response from the auth API, decoded from the error envelope."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        details: Optional[Any] = None,
    ) -> None:
        super().__init__(f"{status_code} {code}: {message}")
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details

    @property
    def retry_after_seconds(self) -> Optional[int]:
        if isinstance(self.details, dict):
            value = self.details.get("retryAfterSeconds")
            return int(value) if value is not None else None
        return None

    @property
    def reason(self) -> Optional[str]:
        if isinstance(self.details, dict):
            return self.details.get("reason")
        return None


class AuthApiClient:
    """Async client for the ``/auth`` endpoints.

    The refresh token never passes through this object's callers: it lives
    in the underlying ``httpx`` cookie jar, set and cleared by the server.
    Every request carries a finite timeout.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.http = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout),
            transport=transport,
            follow_redirects=False,
        )

    @classmethod
    def from_settings(
        cls,
        base_url: str,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "AuthApiClient":
        return cls(
            base_url,
            timeout=settings.client_request_timeout_seconds,
            transport=transport,
        )

    @property
    def has_refresh_cookie(self) -> bool:
        return self.http.cookies.get(REFRESH_COOKIE) is not None

    @staticmethod
    def _bearer(access_token: Optional[str]) -> Dict[str, str]:
        return {"Authorization": f"Bearer {access_token}"} if access_token else {}

    async def _call(
        self,
        method: str,
        path: str,
        *,
        json: Optional[dict] = None,
        access_token: Optional[str] = None,
    ) -> Any:
        response = await self.http.request(
            method, path, json=json, headers=self._bearer(access_token)
        )
        try:
            body = response.json()
        except ValueError:
            body = None
        if response.is_success:
            return body.get("data") if isinstance(body, dict) else None
        error = body.get("error") if isinstance(body, dict) else None
        if not isinstance(error, dict):
            error = {}
        raise ApiError(
            response.status_code,
            error.get("code") or "server_error",
            error.get("message") or response.reason_phrase,
            error.get("details"),
        )

    async def register(
        self, email: str, password: str, name: str, **profile: Any
    ) -> Dict[str, Any]:
        payload = {"email": email, "password": password, "name": name, **profile}
        return await self._call("POST", "/auth/register", json=payload)

    async def login(
        self, email: str, password: str, *, remember_me: bool = False
    ) -> Dict[str, Any]:
        return await self._call(
            "POST",
            "/auth/login",
            json={"email": email, "password": password, "rememberMe": remember_me},
        )

    async def refresh(self) -> Dict[str, Any]:
        return await self._call("POST", "/auth/refresh")

    async def logout(self, access_token: str) -> None:
        await self._call("POST", "/auth/logout", access_token=access_token)

    async def logout_all(self, access_token: str) -> Dict[str, Any]:
        return await self._call("POST", "/auth/logout-all", access_token=access_token)

    async def change_password(
        self, access_token: str, current_password: str, new_password: str
    ) -> Dict[str, Any]:
        return await self._call(
            "POST",
            "/auth/change-password",
            json={"currentPassword": current_password, "newPassword": new_password},
            access_token=access_token,
        )

    async def me(self, access_token: str) -> Dict[str, Any]:
        return await self._call("GET", "/auth/me", access_token=access_token)

    async def verify_email(self, token: str) -> Dict[str, Any]:
        return await self._call("GET", f"/auth/verify-email/{token}")

    async def resend_verification(self, access_token: str) -> Dict[str, Any]:
        return await self._call("POST", "/auth/resend-verification", access_token=access_token)

    async def forgot_password(self, email: str) -> Dict[str, Any]:
        return await self._call("POST", "/auth/forgot-password", json={"email": email})

    async def reset_password(self, token: str, password: str) -> Dict[str, Any]:
        return await self._call(
            "POST", f"/auth/reset-password/{token}", json={"password": password}
        )

    async def report_security_event(
        self, event: Dict[str, Any], *, access_token: Optional[str] = None
    ) -> None:
        await self._call(
            "POST", "/auth/security-events", json=event, access_token=access_token
        )

    async def aclose(self) -> None:
        await self.http.aclose()
