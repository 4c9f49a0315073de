"""HTTP-клиент удалённой системы учёта (PostgREST-совместимый API)."""

from __future__ import annotations

from typing import Any, Iterable
import logging
import threading

import requests

logger = logging.getLogger(__name__)

AUTH_ERROR_MARKERS = (
    "jwt expired",
    "invalid jwt",
    "jwsinvalidsignature",
    "pgrst301",
    "pgrst302",
    "invalid refresh token",
    "not authenticated",
    "unauthorized",
)


class BackendError(Exception):
    """Ошибка обращения к удалённой системе."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthError(BackendError):
    """Сессия недействительна: нужен refresh или повторный вход."""


def is_auth_error(status_code: int | None, body: str | None = None) -> bool:
    """Признак ошибки аутентификации/авторизации по статусу и телу ответа."""
    if status_code in (401, 403):
        return True
    text = (body or "").lower()
    return any(marker in text for marker in AUTH_ERROR_MARKERS)


class SessionStore:
    """Текущая пользовательская сессия и её обновление по refresh-токену."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None,
        access_token: str | None = None,
        refresh_token: str | None = None,
        timeout: float = 10,
        http: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._http = http or requests.Session()
        self._lock = threading.Lock()
        self._session: dict | None = None
        if access_token:
            self._session = {"access_token": access_token, "refresh_token": refresh_token}

    def get_session(self) -> dict | None:
        with self._lock:
            return dict(self._session) if self._session else None

    def set_session(self, session: dict | None) -> None:
        """Сессию выдаёт внешний слой входа; здесь только храним."""
        with self._lock:
            self._session = dict(session) if session else None

    def refresh_session(self) -> dict:
        """Обновляет access-токен.

        :return: новая сессия
        :raises AuthError: если refresh-токена нет или он отклонён
        """
        current = self.get_session() or {}
        refresh_token = current.get("refresh_token")
        if not refresh_token:
            raise AuthError("Нет refresh-токена, требуется повторный вход.")
        try:
            resp = self._http.post(
                f"{self.base_url}/auth/v1/token",
                params={"grant_type": "refresh_token"},
                headers={"apikey": self.api_key or "", "Content-Type": "application/json"},
                json={"refresh_token": refresh_token},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise BackendError(f"session refresh failed: {exc}") from exc
        if resp.status_code >= 400:
            if resp.status_code in (400, 401, 403) or is_auth_error(resp.status_code, resp.text):
                raise AuthError("Refresh-токен отклонён.", resp.status_code)
            raise BackendError(f"session refresh failed: {resp.status_code}", resp.status_code)
        data = resp.json()
        session = {
            "access_token": data.get("access_token"),
            "refresh_token": data.get("refresh_token") or refresh_token,
            "expires_at": data.get("expires_at"),
        }
        self.set_session(session)
        logger.info("session refreshed")
        return session

    def access_token(self) -> str | None:
        session = self.get_session()
        return session.get("access_token") if session else None


class BackendClient:
    """Абстрактные операции чтения/записи поверх REST API системы учёта.

    Для движка синхронизации complete_sale выглядит как один
    аутентифицированный вызов; ключ шлюза и пользовательский токен
    подставляются здесь.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None,
        sessions: SessionStore,
        timeout: float = 15,
        http: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.sessions = sessions
        self.timeout = timeout
        self._http = http or requests.Session()

    def _rest_url(self, resource: str) -> str:
        return f"{self.base_url}/rest/v1/{resource}"

    def _headers(self, extra: dict | None = None) -> dict:
        token = self.sessions.access_token() or self.api_key or ""
        headers = {
            "apikey": self.api_key or "",
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        if extra:
            headers.update(extra)
        return headers

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            resp = self._http.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            raise BackendError(f"{method} {url} failed: {exc}") from exc
        logger.debug("%s %s -> %s", method, url, resp.status_code)
        if resp.status_code >= 400:
            body = resp.text
            if is_auth_error(resp.status_code, body):
                raise AuthError(f"{method} {url}: {resp.status_code} {body[:200]}", resp.status_code)
            raise BackendError(f"{method} {url}: {resp.status_code} {body[:200]}", resp.status_code)
        return resp

    @staticmethod
    def _rows(resp: requests.Response) -> list[dict]:
        if not resp.content:
            return []
        data = resp.json()
        if isinstance(data, list):
            return data
        return [data] if data else []

    def fetch(self, resource: str, record_id: str) -> dict | None:
        resp = self._request(
            "GET",
            self._rest_url(resource),
            params={"id": f"eq.{record_id}", "select": "*"},
            headers=self._headers(),
        )
        rows = self._rows(resp)
        return rows[0] if rows else None

    def select(
        self,
        resource: str,
        *,
        eq: dict[str, Any] | None = None,
        in_: dict[str, Iterable[Any]] | None = None,
        gte: dict[str, Any] | None = None,
        lte: dict[str, Any] | None = None,
        order: str | None = None,
    ) -> list[dict]:
        """Выборка с фильтрами PostgREST (eq/in/gte/lte по колонкам)."""
        params: list[tuple[str, str]] = [("select", "*")]
        for column, value in (eq or {}).items():
            params.append((column, f"eq.{value}"))
        for column, values in (in_ or {}).items():
            joined = ",".join(str(item) for item in values)
            params.append((column, f"in.({joined})"))
        for column, value in (gte or {}).items():
            params.append((column, f"gte.{value}"))
        for column, value in (lte or {}).items():
            params.append((column, f"lte.{value}"))
        if order:
            params.append(("order", order))
        resp = self._request("GET", self._rest_url(resource), params=params, headers=self._headers())
        return self._rows(resp)

    def insert(self, resource: str, data: dict) -> dict:
        resp = self._request(
            "POST",
            self._rest_url(resource),
            json=data,
            headers=self._headers({"Prefer": "return=representation"}),
        )
        rows = self._rows(resp)
        return rows[0] if rows else dict(data)

    def update(self, resource: str, record_id: str, patch: dict) -> dict | None:
        resp = self._request(
            "PATCH",
            self._rest_url(resource),
            params={"id": f"eq.{record_id}"},
            json=patch,
            headers=self._headers({"Prefer": "return=representation"}),
        )
        rows = self._rows(resp)
        return rows[0] if rows else None

    def delete(self, resource: str, record_id: str) -> None:
        self._request(
            "DELETE",
            self._rest_url(resource),
            params={"id": f"eq.{record_id}"},
            headers=self._headers(),
        )

    def complete_sale(self, payload: dict) -> dict:
        """Транзакционное завершение продажи (списание остатков и т.п. на сервере).

        Шлюз проверяет ключ проекта, сама функция отдельно проверяет
        пользовательский токен.
        """
        token = self.sessions.access_token()
        if not token:
            raise AuthError("Нет пользовательской сессии для завершения продажи.")
        resp = self._request(
            "POST",
            f"{self.base_url}/functions/v1/complete-sale",
            json=payload,
            headers={
                "apikey": self.api_key or "",
                "Authorization": f"Bearer {self.api_key or token}",
                "X-User-Token": token,
                "Content-Type": "application/json",
            },
        )
        rows = self._rows(resp)
        return rows[0] if rows else {}

    def ping(self, timeout: float = 5) -> bool:
        """Доступность сервера: любой ответ без 5xx считаем связью."""
        try:
            resp = self._http.get(
                f"{self.base_url}/rest/v1/",
                headers={"apikey": self.api_key or ""},
                timeout=timeout,
            )
        except requests.RequestException:
            return False
        return resp.status_code < 500


__all__ = [
    "AuthError",
    "BackendClient",
    "BackendError",
    "SessionStore",
    "is_auth_error",
]
