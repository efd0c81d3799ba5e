from __future__ import annotations

import http.client
import json
import socket
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any, Iterable, Protocol

from .errors import DependencyError


class DirectoryError(DependencyError):
    """Raised when the account directory cannot be queried."""


@dataclass(frozen=True)
class DirectoryAccount:
    account_id: str
    email: str


class AccountDirectory(Protocol):
    def find_account_by_email(self, email: str) -> DirectoryAccount | None: ...


class StubAccountDirectory:
    def __init__(self, accounts: Iterable[tuple[str, str]] = ()) -> None:
        self._accounts = [DirectoryAccount(account_id=account_id, email=email) for account_id, email in accounts]
        self.lookups: list[str] = []

    def find_account_by_email(self, email: str) -> DirectoryAccount | None:
        self.lookups.append(email)
        for account in self._accounts:
            if account.email == email:
                return account
        return None


class SupabaseAccountDirectory:
    """Looks accounts up through the Supabase auth admin API.

    The admin API has no exact-email filter, so users are paged through and
    matched on the exact address.
    """

    def __init__(
        self,
        *,
        base_url: str,
        service_role_key: str,
        page_size: int = 1000,
        timeout_seconds: int = 10,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = service_role_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("service_role_key must not be empty")
        self._base_url = stripped_url
        self._service_role_key = stripped_key
        self._page_size = max(1, page_size)
        self._timeout_seconds = timeout_seconds

    def find_account_by_email(self, email: str) -> DirectoryAccount | None:
        page = 1
        while True:
            users = self._list_users(page)
            for user in users:
                if user.get("email") == email and user.get("id"):
                    return DirectoryAccount(account_id=str(user["id"]), email=email)
            if len(users) < self._page_size:
                return None
            page += 1

    def _list_users(self, page: int) -> list[dict[str, Any]]:
        query = urllib.parse.urlencode({"page": page, "per_page": self._page_size})
        request = urllib.request.Request(
            f"{self._base_url}/auth/v1/admin/users?{query}",
            headers={
                "apikey": self._service_role_key,
                "Authorization": f"Bearer {self._service_role_key}",
                "Accept": "application/json",
            },
            method="GET",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                payload = json.loads(response.read().decode("utf-8"))
        except urllib.error.HTTPError as exc:
            raise DirectoryError(f"directory lookup failed: HTTP {exc.code}") from exc
        except urllib.error.URLError as exc:
            raise DirectoryError(f"directory lookup failed: {exc.reason}") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise DirectoryError("directory lookup timed out") from exc
        except (OSError, http.client.HTTPException) as exc:
            raise DirectoryError(f"directory lookup failed: {exc!r}") from exc
        except ValueError as exc:
            raise DirectoryError("directory returned invalid JSON") from exc

        users = payload.get("users") if isinstance(payload, dict) else payload
        if not isinstance(users, list):
            raise DirectoryError("directory response did not contain a user list")
        return [user for user in users if isinstance(user, dict)]
