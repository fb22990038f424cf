from __future__ import annotations

import hashlib
import json
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from .report_schema import ValidationReport

STARTING_CREDITS = 3
LIFETIME_PLAN = "lifetime"
PROTECTED_PROFILE_FIELDS = {"id", "email", "credits", "isPro", "joinedAt", "createdAt"}


def default_preferences() -> Dict[str, Any]:
    return {"emailNotifications": True, "marketingEmails": False, "theme": "light"}


class UserStoreError(RuntimeError):
    pass


class UserNotFoundError(UserStoreError):
    pass


class InsufficientCreditsError(UserStoreError):
    pass


@dataclass
class UserProfile:
    user_id: str
    email: str
    name: str
    avatar_url: Optional[str] = None
    credits: int = STARTING_CREDITS
    is_pro: bool = False
    joined_at: int = 0
    preferences: Dict[str, Any] = field(default_factory=default_preferences)

    @property
    def can_analyze(self) -> bool:
        return self.is_pro or self.credits > 0

    def to_dict(self) -> Dict:
        return {
            "id": self.user_id,
            "email": self.email,
            "name": self.name,
            "avatarUrl": self.avatar_url,
            "credits": self.credits,
            "isPro": self.is_pro,
            "joinedAt": self.joined_at,
            "preferences": dict(self.preferences),
        }

    @classmethod
    def from_dict(cls, payload: Dict) -> "UserProfile":
        preferences = default_preferences()
        preferences.update(payload.get("preferences") or {})
        return cls(
            user_id=payload["id"],
            email=payload["email"],
            name=payload.get("name", ""),
            avatar_url=payload.get("avatarUrl"),
            credits=int(payload.get("credits", STARTING_CREDITS)),
            is_pro=bool(payload.get("isPro", False)),
            joined_at=int(payload.get("joinedAt", 0)),
            preferences=preferences,
        )


class UserStore:
    """
    Persists user profiles, saved reports and the waitlist as JSON on disk.
    """

    def __init__(self, root: Path):
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    def get(self, email: str) -> Optional[UserProfile]:
        return self._read_user(self._user_path(email))

    def require(self, email: str) -> UserProfile:
        user = self.get(email)
        if user is None:
            raise UserNotFoundError("User account not found.")
        return user

    def upsert(self, email: str, *, name: Optional[str] = None, avatar_url: Optional[str] = None) -> UserProfile:
        clean_email = _normalize_email(email)
        user = self.get(clean_email)
        if user is None:
            user = UserProfile(
                user_id=uuid4().hex,
                email=clean_email,
                name=(name or "").strip(),
                avatar_url=avatar_url,
                joined_at=_now_millis(),
            )
        else:
            if name is not None:
                user.name = name.strip()
            if avatar_url is not None:
                user.avatar_url = avatar_url
        return self._save(user)

    def update_profile(self, email: str, changes: Dict[str, Any]) -> UserProfile:
        user = self.require(email)
        for key, value in changes.items():
            if key in PROTECTED_PROFILE_FIELDS:
                continue
            if key == "name" and isinstance(value, str):
                user.name = value.strip()
            elif key == "avatarUrl":
                user.avatar_url = value if isinstance(value, str) and value.strip() else None
            elif key == "preferences" and isinstance(value, dict):
                user.preferences.update(value)
        return self._save(user)

    def delete(self, email: str) -> None:
        user_path = self._user_path(email)
        if not user_path.exists():
            raise UserNotFoundError("User account not found.")
        user_path.unlink()
        reports_dir = self._reports_dir(email)
        if reports_dir.exists():
            shutil.rmtree(reports_dir)

    def deduct_credit(self, email: str) -> UserProfile:
        user = self.require(email)
        user.credits = max(0, user.credits - 1)
        return self._save(user)

    def ensure_can_analyze(self, email: str) -> UserProfile:
        user = self.require(email)
        if not user.can_analyze:
            raise InsufficientCreditsError("Insufficient credits. Please upgrade or purchase more.")
        return user

    def record_analysis(self, email: str, report: ValidationReport) -> UserProfile:
        """Charge one credit for a finished analysis and keep the report."""
        user = self.ensure_can_analyze(email)
        if not user.is_pro:
            user.credits -= 1
            self._save(user)
        self.append_report(email, report.to_dict())
        return user

    def append_report(self, email: str, report: Dict[str, Any]) -> Dict[str, Any]:
        self.require(email)
        report_id = str(report.get("id") or uuid4())
        stored = dict(report)
        stored["id"] = report_id
        stored.setdefault("createdAt", _now_millis())

        reports_dir = self._reports_dir(email)
        reports_dir.mkdir(parents=True, exist_ok=True)
        report_path = reports_dir / f"{_file_key(report_id)}.json"
        if report_path.exists():
            # Reports are append-only; saving the same id twice keeps the first copy.
            try:
                return json.loads(report_path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                raise UserStoreError(f"Failed to read saved report: {exc}") from exc
        try:
            report_path.write_text(json.dumps(stored, indent=2), encoding="utf-8")
        except OSError as exc:
            raise UserStoreError(f"Failed to persist report: {exc}") from exc
        return stored

    def list_reports(self, email: str) -> List[Dict[str, Any]]:
        self.require(email)
        reports_dir = self._reports_dir(email)
        if not reports_dir.exists():
            return []

        reports: List[Dict[str, Any]] = []
        for report_path in reports_dir.glob("*.json"):
            try:
                payload = json.loads(report_path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                raise UserStoreError(f"Failed to read saved report: {exc}") from exc
            if isinstance(payload, dict):
                reports.append(payload)
        reports.sort(key=lambda item: item.get("createdAt") or 0, reverse=True)
        return reports

    def join_waitlist(self, email: str, source: str = "landing") -> Dict[str, Any]:
        clean_email = _normalize_email(email)
        entries = self._read_waitlist()
        entry = entries.get(clean_email)
        if entry is None:
            entry = {"id": uuid4().hex, "email": clean_email, "joinedAt": _now_millis()}
        entry["source"] = source or "landing"
        entries[clean_email] = entry
        self._write_json(self.root / "waitlist.json", entries)
        return entry

    def apply_payment_event(self, *, customer_email: str, plan_type: str, payment_status: str) -> Optional[UserProfile]:
        """Grant entitlements for a completed checkout. Unpaid events are ignored."""
        if payment_status != "paid" or not customer_email:
            return None
        user = self.require(customer_email)
        if (plan_type or "single") == LIFETIME_PLAN:
            user.is_pro = True
        else:
            user.credits += 1
        return self._save(user)

    def _read_user(self, user_path: Path) -> Optional[UserProfile]:
        if not user_path.exists():
            return None
        try:
            payload = json.loads(user_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise UserStoreError(f"Failed to read user profile: {exc}") from exc
        return UserProfile.from_dict(payload)

    def _read_waitlist(self) -> Dict[str, Dict[str, Any]]:
        waitlist_path = self.root / "waitlist.json"
        if not waitlist_path.exists():
            return {}
        try:
            payload = json.loads(waitlist_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise UserStoreError(f"Failed to read waitlist: {exc}") from exc
        return payload if isinstance(payload, dict) else {}

    def _save(self, user: UserProfile) -> UserProfile:
        user_path = self._user_path(user.email)
        user_path.parent.mkdir(parents=True, exist_ok=True)
        self._write_json(user_path, user.to_dict())
        return user

    def _write_json(self, path: Path, payload: Any) -> None:
        try:
            path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        except OSError as exc:
            raise UserStoreError(f"Failed to write {path.name}: {exc}") from exc

    def _user_path(self, email: str) -> Path:
        return self.root / "users" / f"{_email_key(email)}.json"

    def _reports_dir(self, email: str) -> Path:
        return self.root / "reports" / _email_key(email)


def _normalize_email(email: str) -> str:
    clean = (email or "").strip().lower()
    if not clean or "@" not in clean:
        raise UserStoreError("Invalid email address.")
    return clean


def _email_key(email: str) -> str:
    return hashlib.sha256(_normalize_email(email).encode("utf-8")).hexdigest()[:32]


def _file_key(value: str) -> str:
    return "".join(char if char.isalnum() or char in "-_" else "_" for char in value)[:64]


def _now_millis() -> int:
    return int(time.time() * 1000)
