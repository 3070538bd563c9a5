from __future__ import annotations

import base64
import dataclasses
import hashlib
import json
import os
import secrets
import threading
import uuid
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from storeauth.logging import get_logger
from storeauth.storage.errors import ConstraintViolation
from storeauth.storage.models import (
    AccountStatus,
    LockoutState,
    OneTimeToken,
    Session,
    TokenPurpose,
    TwoFactorConfig,
    User,
    UserRole,
    UserType,
    utcnow,
)


class MemoryStore:
    """In-process identity, credential and session store.

    Every read-modify-write runs under a single re-entrant lock so callers get
    atomic counters and single-winner consumption without a database. State is
    mirrored to a JSON file under ``fs_root`` so a restarted process keeps its
    accounts and sessions.
    """

    def __init__(
        self, fs_root: str = "/tmp/storeauth", *, mfa_encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.sessions: Dict[str, Session] = {}
        self.lockouts: Dict[str, LockoutState] = {}
        self.one_time_tokens: Dict[str, OneTimeToken] = {}
        self.two_factor: Dict[str, TwoFactorConfig] = {}
        # RLock so store methods can call each other while holding it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._mfa_cipher = self._build_mfa_cipher(mfa_encryption_key)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_mfa_cipher(self, key_material: str | None) -> Fernet:
        material = key_material or os.getenv("MFA_SECRET_KEY") or os.getenv("JWT_SECRET")
        if not material:
            key_path = self.fs_root / ".mfa_key"
            if key_path.exists():
                material = key_path.read_text().strip()
            if not material:
                material = secrets.token_urlsafe(64)
                try:
                    key_path.write_text(material)
                    os.chmod(key_path, 0o600)
                except OSError as exc:
                    raise RuntimeError("Unable to persist MFA encryption key") from exc
        return Fernet(self._derive_cipher_key(material))

    # users
    def create_user(
        self,
        username: str,
        email: str,
        *,
        role: UserRole = UserRole.CUSTOMER,
        user_type: UserType = UserType.CUSTOMER,
        account_status: AccountStatus = AccountStatus.ACTIVE,
        full_name: Optional[str] = None,
        mobile_number: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            if self._find_by_username(username):
                raise ConstraintViolation("username already exists", {"field": "username"})
            if self._find_by_email(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                username=username,
                email=email,
                role=UserRole(role),
                user_type=UserType(user_type),
                account_status=AccountStatus(account_status),
                full_name=full_name,
                mobile_number=mobile_number,
            )
            self.users[user.id] = user
            self._persist_state()
            return dataclasses.replace(user)

    def _find_by_username(self, username: str) -> Optional[User]:
        wanted = username.lower()
        return next((u for u in self.users.values() if u.username.lower() == wanted), None)

    def _find_by_email(self, email: str) -> Optional[User]:
        wanted = email.lower()
        return next((u for u in self.users.values() if u.email.lower() == wanted), None)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return dataclasses.replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_by_email(email)
            return dataclasses.replace(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_by_username(username)
            return dataclasses.replace(user) if user else None

    def find_user_by_login(self, login: str) -> Optional[User]:
        """Resolve a login identifier that may be either a username or an email."""
        with self._data_lock:
            user = self._find_by_username(login) or self._find_by_email(login)
            return dataclasses.replace(user) if user else None

    def _update_user(self, user_id: str, **changes: Any) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for key, value in changes.items():
                setattr(user, key, value)
            self._persist_state()
            return dataclasses.replace(user)

    def update_user_role(self, user_id: str, role: UserRole) -> Optional[User]:
        return self._update_user(user_id, role=UserRole(role))

    def set_account_status(self, user_id: str, status: AccountStatus) -> Optional[User]:
        return self._update_user(user_id, account_status=AccountStatus(status))

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        return self._update_user(user_id, email_verified=True)

    def record_login(self, user_id: str, ip_address: Optional[str], at: datetime) -> None:
        self._update_user(user_id, last_login_at=at, last_login_ip=ip_address)

    # credentials
    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self.users[user_id].password_changed_at = utcnow()
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # lockout
    def get_lockout(self, user_id: str) -> LockoutState:
        with self._data_lock:
            state = self.lockouts.get(user_id)
            return dataclasses.replace(state) if state else LockoutState(user_id=user_id)

    def update_lockout(
        self, user_id: str, mutate: Callable[[LockoutState], None]
    ) -> LockoutState:
        """Apply ``mutate`` to the user's lockout record as one atomic step."""
        with self._data_lock:
            state = self.lockouts.get(user_id) or LockoutState(user_id=user_id)
            mutate(state)
            if state.failed_attempts == 0 and state.locked_until is None:
                self.lockouts.pop(user_id, None)
            else:
                self.lockouts[user_id] = state
            self._persist_state()
            return dataclasses.replace(state)

    # sessions
    def create_session(
        self,
        user_id: str,
        refresh_token_hash: str,
        *,
        ttl_minutes: int,
        ip_address: str | None = None,
        user_agent: str | None = None,
        session_id: str | None = None,
        now: datetime | None = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if session_id and session_id in self.sessions:
                raise ConstraintViolation("session id already in use", {"session_id": session_id})
            sess = Session.new(
                user_id,
                refresh_token_hash,
                ttl_minutes,
                ip_address,
                user_agent,
                session_id=session_id,
                now=now,
            )
            self.sessions[sess.id] = sess
            self._persist_state()
            return dataclasses.replace(sess)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return dataclasses.replace(sess) if sess else None

    def find_session_by_refresh_hash(self, refresh_token_hash: str) -> Optional[Session]:
        with self._data_lock:
            sess = self._find_session_by_hash(refresh_token_hash)
            return dataclasses.replace(sess) if sess else None

    def _find_session_by_hash(self, refresh_token_hash: str) -> Optional[Session]:
        return next(
            (s for s in self.sessions.values() if s.refresh_token_hash == refresh_token_hash),
            None,
        )

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            return [
                dataclasses.replace(s) for s in self.sessions.values() if s.user_id == user_id
            ]

    def revoke_session(self, session_id: str, *, now: datetime | None = None) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.revoked:
                return False
            sess.revoked = True
            sess.revoked_at = now or utcnow()
            self._persist_state()
            return True

    def revoke_user_sessions(
        self,
        user_id: str,
        except_session_id: Optional[str] = None,
        *,
        now: datetime | None = None,
    ) -> int:
        with self._data_lock:
            revoked_at = now or utcnow()
            count = 0
            for sess in self.sessions.values():
                if sess.user_id != user_id or sess.revoked:
                    continue
                if except_session_id and sess.id == except_session_id:
                    continue
                sess.revoked = True
                sess.revoked_at = revoked_at
                count += 1
            if count:
                self._persist_state()
            return count

    def rotate_session(
        self,
        presented_hash: str,
        new_refresh_hash: str,
        *,
        ttl_minutes: int,
        now: datetime,
        ip_address: str | None = None,
        new_session_id: str | None = None,
    ) -> Optional[tuple[Session, Session]]:
        """Retire the session holding ``presented_hash`` and open its successor.

        Returns ``(retired, successor)`` or ``None`` when the presented hash is
        unknown, already revoked or expired. Only one caller can retire a given
        session.
        """
        with self._data_lock:
            current = self._find_session_by_hash(presented_hash)
            if not current or not current.is_active(now):
                return None
            successor = Session.new(
                current.user_id,
                new_refresh_hash,
                ttl_minutes,
                ip_address or current.ip_address,
                current.user_agent,
                session_id=new_session_id,
                now=now,
            )
            if successor.id in self.sessions:
                raise ConstraintViolation(
                    "session id already in use", {"session_id": successor.id}
                )
            current.revoked = True
            current.revoked_at = now
            current.rotated_to = successor.id
            self.sessions[successor.id] = successor
            self._persist_state()
            return dataclasses.replace(current), dataclasses.replace(successor)

    # one-time tokens
    def save_one_time_token(self, token: OneTimeToken) -> None:
        with self._data_lock:
            if token.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": token.user_id})
            self.one_time_tokens[token.token_hash] = token
            self._persist_state()

    def get_one_time_token(self, token_hash: str) -> Optional[OneTimeToken]:
        with self._data_lock:
            token = self.one_time_tokens.get(token_hash)
            return dataclasses.replace(token) if token else None

    def _claim_token(
        self, token_hash: str, purpose: TokenPurpose, now: datetime
    ) -> Optional[OneTimeToken]:
        token = self.one_time_tokens.get(token_hash)
        if not token or token.purpose != purpose or token.consumed:
            return None
        if now >= token.expires_at:
            return None
        token.consumed = True
        token.consumed_at = now
        return token

    def consume_one_time_token(
        self, token_hash: str, purpose: TokenPurpose, *, now: datetime
    ) -> Optional[OneTimeToken]:
        with self._data_lock:
            token = self._claim_token(token_hash, purpose, now)
            if token:
                self._persist_state()
                return dataclasses.replace(token)
            return None

    def redeem_password_reset(
        self,
        token_hash: str,
        password_hash: str,
        password_algo: str,
        *,
        now: datetime,
    ) -> Optional[str]:
        """Consume a reset token and store the new password hash in one step.

        Returns the user id, or ``None`` when the token cannot be redeemed.
        Outstanding reset tokens for the same user are consumed too.
        """
        with self._data_lock:
            token = self.one_time_tokens.get(token_hash)
            if not token:
                return None
            user = self.users.get(token.user_id)
            if not user or user.account_status == AccountStatus.DEACTIVATED:
                return None
            if not self._claim_token(token_hash, TokenPurpose.PASSWORD_RESET, now):
                return None
            for other in self.one_time_tokens.values():
                if (
                    other.user_id == user.id
                    and other.purpose == TokenPurpose.PASSWORD_RESET
                    and not other.consumed
                ):
                    other.consumed = True
                    other.consumed_at = now
            self.credentials[user.id] = (password_hash, password_algo)
            user.password_changed_at = now
            self._persist_state()
            return user.id

    # two-factor
    def _encrypt_secret(self, secret: str) -> str:
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_secret(self, secret: str) -> str:
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken as exc:
            self.logger.error("two_factor_secret_decrypt_failed")
            raise RuntimeError("stored two-factor secret cannot be decrypted") from exc

    def set_two_factor(
        self, user_id: str, secret: str, *, enabled: bool = False
    ) -> TwoFactorConfig:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for 2fa", {"user_id": user_id})
            record = TwoFactorConfig(
                user_id=user_id, secret=self._encrypt_secret(secret), enabled=enabled
            )
            self.two_factor[user_id] = record
            self._persist_state()
            return dataclasses.replace(record, secret=secret)

    def get_two_factor(self, user_id: str) -> Optional[TwoFactorConfig]:
        with self._data_lock:
            cfg = self.two_factor.get(user_id)
            if not cfg:
                return None
            return dataclasses.replace(cfg, secret=self._decrypt_secret(cfg.secret))

    def accept_two_factor_step(self, user_id: str, step: int, *, enable: bool) -> bool:
        """Record ``step`` as used; False if it (or a later step) was already used."""
        with self._data_lock:
            cfg = self.two_factor.get(user_id)
            if not cfg:
                return False
            if cfg.last_used_step is not None and step <= cfg.last_used_step:
                return False
            cfg.last_used_step = step
            if enable:
                cfg.enabled = True
            self._persist_state()
            return True

    def delete_two_factor(self, user_id: str) -> bool:
        with self._data_lock:
            removed = self.two_factor.pop(user_id, None)
            if removed:
                self._persist_state()
            return removed is not None

    # persistence
    @staticmethod
    def _to_json(obj: Any) -> dict:
        raw = dataclasses.asdict(obj)
        for key, value in raw.items():
            if isinstance(value, datetime):
                raw[key] = value.isoformat()
            elif isinstance(value, Enum):
                raw[key] = value.value
        return raw

    @staticmethod
    def _from_json(cls: type, data: dict, enums: Dict[str, type] | None = None) -> Any:
        values: Dict[str, Any] = {}
        for f in dataclasses.fields(cls):
            if f.name not in data:
                continue
            value = data[f.name]
            if enums and f.name in enums and value is not None:
                value = enums[f.name](value)
            elif isinstance(value, str) and (f.name.endswith("_at") or f.name.endswith("_until")):
                value = datetime.fromisoformat(value)
            values[f.name] = value
        return cls(**values)

    def _persist_state(self) -> None:
        state = {
            "users": [self._to_json(u) for u in self.users.values()],
            "credentials": [
                {"user_id": user_id, "password_hash": creds[0], "password_algo": creds[1]}
                for user_id, creds in self.credentials.items()
            ],
            "sessions": [self._to_json(s) for s in self.sessions.values()],
            "lockouts": [self._to_json(s) for s in self.lockouts.values()],
            "one_time_tokens": [self._to_json(t) for t in self.one_time_tokens.values()],
            "two_factor": [self._to_json(c) for c in self.two_factor.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        user_enums = {"role": UserRole, "user_type": UserType, "account_status": AccountStatus}
        self.users = {
            u["id"]: self._from_json(User, u, user_enums) for u in data.get("users", [])
        }
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.sessions = {
            s["id"]: self._from_json(Session, s) for s in data.get("sessions", [])
        }
        self.lockouts = {
            s["user_id"]: self._from_json(LockoutState, s) for s in data.get("lockouts", [])
        }
        self.one_time_tokens = {
            t["token_hash"]: self._from_json(OneTimeToken, t, {"purpose": TokenPurpose})
            for t in data.get("one_time_tokens", [])
        }
        self.two_factor = {
            c["user_id"]: self._from_json(TwoFactorConfig, c)
            for c in data.get("two_factor", [])
        }
        return True
