# taskify/services/google_auth.py
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Iterable, Optional

import google.auth
from google.auth.exceptions import DefaultCredentialsError, RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow

from core.logs import get_logger
from core.settings import CLIENT_SECRET_PATH, FIRESTORE, SYNC, TOKEN_PATH
from services.remote import Principal
from storage.device import get_device_id


SCOPES = list(FIRESTORE.scopes)

logger = get_logger("auth")


class GoogleAuth:
    """Credentials for the remote store plus the principal tasks are scoped to.

    Credentials come from a cached OAuth token, the installed-app consent flow
    when a client secret is present, or Application Default Credentials.
    """

    def __init__(
        self,
        secrets_path: str | Path = CLIENT_SECRET_PATH,
        token_path: str | Path = TOKEN_PATH,
        *,
        owner_id: Optional[str] = None,
        device_id_path: Optional[Path] = None,
    ):
        self.secrets_path = Path(secrets_path)
        self.token_path = Path(token_path)
        self.token_path.parent.mkdir(parents=True, exist_ok=True)
        self.creds = None
        self._owner_id = owner_id or SYNC.owner_id
        self._device_id_path = device_id_path
        self._principal: Optional[Principal] = None

    def ensure_credentials(self) -> bool:
        if self.creds and self.creds.valid:
            return True

        if self.creds is None and self.token_path.exists():
            try:
                self.creds = Credentials.from_authorized_user_file(str(self.token_path), SCOPES)
            except (ValueError, json.JSONDecodeError) as exc:
                logger.warning("Failed to load %s: %s; triggering reauth", self.token_path, exc)
                self.reset_credentials()

        if self.creds and not self._has_required_scopes(self.creds):
            logger.info("Token is missing required scopes; requesting consent again")
            self.reset_credentials()

        if self.creds and not self.creds.valid:
            if self.creds.expired and getattr(self.creds, "refresh_token", None):
                try:
                    self.creds.refresh(Request())
                except RefreshError as exc:
                    logger.warning("Token refresh failed: %s; forcing reauth", exc)
                    self.reset_credentials()
            else:
                self.reset_credentials()

        if not self.creds:
            if self.secrets_path.exists():
                flow = InstalledAppFlow.from_client_secrets_file(str(self.secrets_path), SCOPES)
                logger.info("Running OAuth consent flow (local server)")
                self.creds = flow.run_local_server(
                    port=0,
                    access_type="offline",
                    prompt="consent",
                    include_granted_scopes=True,
                )
                self._persist_credentials(self.creds)
            else:
                try:
                    self.creds, _ = google.auth.default(scopes=SCOPES)
                except DefaultCredentialsError as exc:
                    raise RuntimeError(
                        f"No Google credentials: put an OAuth client secret at {self.secrets_path} "
                        "or configure Application Default Credentials"
                    ) from exc
                if not self.creds.valid:
                    self.creds.refresh(Request())

        self._log_active_scopes(getattr(self.creds, "scopes", None))
        return True

    def get_credentials(self):
        return self.creds

    def principal(self) -> Principal:
        """Resolve the owner id once; repeated calls return the same principal."""
        if self._principal is None:
            if self._owner_id:
                self._principal = Principal(owner_id=self._owner_id, anonymous=False)
            else:
                self._principal = Principal(owner_id=get_device_id(self._device_id_path), anonymous=True)
        return self._principal

    def reset_credentials(self) -> None:
        self.creds = None
        try:
            if self.token_path.exists():
                self.token_path.unlink()
                logger.info("Removed cached Google token")
        except OSError as exc:
            logger.warning("Failed to remove cached token: %s", exc)

    # ----- helpers -----
    def _persist_credentials(self, creds) -> None:
        if not isinstance(creds, Credentials):
            return
        data = creds.to_json()
        tmp_path = self.token_path.with_suffix(".tmp")
        try:
            tmp_path.write_text(data, encoding="utf-8")
            os.replace(tmp_path, self.token_path)
        finally:
            if tmp_path.exists():
                try:
                    tmp_path.unlink()
                except OSError:
                    pass

    @staticmethod
    def _has_required_scopes(creds) -> bool:
        current = set(getattr(creds, "scopes", None) or [])
        return all(scope in current for scope in SCOPES)

    def _log_active_scopes(self, scopes: Iterable[str] | None) -> None:
        scopes_list = sorted(set(scopes or []))
        logger.debug("Active scopes: %s", ", ".join(scopes_list) if scopes_list else "-")


__all__ = ["GoogleAuth", "SCOPES"]
