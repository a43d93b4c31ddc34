import io
import json
import os
import tempfile
import zipfile
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session, joinedload

from starterkit.models.audit import AuditLog, File
from starterkit.models.organization import OrganizationMember
from starterkit.models.user import (
    LoginHistory,
    OAuthProvider,
    User,
    UserAPIKey,
    UserPreferences,
    UserSession,
    UserTwoFactor,
)

LOGIN_HISTORY_LIMIT = 100
AUDIT_LOG_LIMIT = 500

ARCHIVE_DATA_NAME = "user_data.json"
ARCHIVE_README_NAME = "README.txt"

README_TEMPLATE = """Data Export for User ID: {user_id}
Generated: {generated_at}

This archive contains your personal data as stored in our system.

Files included:
- user_data.json: Your complete data in JSON format

For questions about this export, please contact support.
"""


def format_bytes(size: int) -> str:
    """Human-readable size using 1024-based units, e.g. ``1.0 KB``."""
    unit = 1024
    if size < unit:
        return f"{size} B"
    div, exp = unit, 0
    n = size // unit
    while n >= unit:
        div *= unit
        exp += 1
        n //= unit
    return f"{size / div:.1f} {'KMGTPE'[exp]}B"


def deref_string(value: Optional[str]) -> str:
    return "" if value is None else value


def _ts(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(microsecond=0).isoformat() + "Z"
        return value.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")
    return str(value)


def _compact(record: Dict[str, Any], *optional: str) -> Dict[str, Any]:
    """Drop the named keys when they are None or empty."""
    return {k: v for k, v in record.items() if not (k in optional and v in (None, "", [], {}))}


def compile_user_data(db: Session, user_id: int) -> Dict[str, Any]:
    """Gather everything we hold about a user into one JSON-serializable document.

    Secrets (password hash, 2FA secret, backup codes, API key hashes, OAuth tokens,
    session token hashes) are never included. Related rows that do not exist are
    omitted rather than treated as an error.
    """
    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        raise LookupError(f"user {user_id} not found")

    data: Dict[str, Any] = {
        "exported_at": _ts(datetime.now(timezone.utc)),
        "user": _compact(
            {
                "id": user.id,
                "name": user.name,
                "email": user.email,
                "email_verified": bool(user.email_verified),
                "is_active": bool(user.is_active),
                "role": user.role,
                "avatar_url": user.avatar_url,
                "bio": user.bio,
                "location": user.location,
                "created_at": _ts(user.created_at),
                "updated_at": _ts(user.updated_at),
            },
            "avatar_url",
            "bio",
            "location",
        ),
    }

    prefs = db.query(UserPreferences).filter(UserPreferences.user_id == user_id).first()
    if prefs:
        data["preferences"] = {
            "id": prefs.id,
            "user_id": prefs.user_id,
            "theme": prefs.theme,
            "timezone": prefs.timezone,
            "language": prefs.language,
            "date_format": prefs.date_format,
            "time_format": prefs.time_format,
            "email_notifications": prefs.email_notifications,
            "created_at": _ts(prefs.created_at),
            "updated_at": _ts(prefs.updated_at),
        }

    sessions = db.query(UserSession).filter(UserSession.user_id == user_id).all()
    data["sessions"] = [
        {
            "id": s.id,
            "user_id": s.user_id,
            "device_info": s.device_info,
            "ip_address": s.ip_address,
            "location": s.location,
            "is_current": bool(s.is_current),
            "last_active_at": _ts(s.last_active_at),
            "expires_at": _ts(s.expires_at),
            "created_at": _ts(s.created_at),
        }
        for s in sessions
    ]

    logins = (
        db.query(LoginHistory)
        .filter(LoginHistory.user_id == user_id)
        .order_by(LoginHistory.created_at.desc(), LoginHistory.id.desc())
        .limit(LOGIN_HISTORY_LIMIT)
        .all()
    )
    data["login_history"] = [
        _compact(
            {
                "id": lh.id,
                "user_id": lh.user_id,
                "success": bool(lh.success),
                "failure_reason": lh.failure_reason,
                "ip_address": lh.ip_address,
                "device_info": lh.device_info,
                "location": lh.location,
                "auth_method": lh.auth_method,
                "session_id": lh.session_id,
                "created_at": _ts(lh.created_at),
            },
            "failure_reason",
            "session_id",
        )
        for lh in logins
    ]

    two_factor = db.query(UserTwoFactor).filter(UserTwoFactor.user_id == user_id).first()
    if two_factor:
        data["two_factor"] = _compact(
            {
                "enabled": bool(two_factor.is_enabled),
                "verified_at": deref_string(two_factor.verified_at),
                "last_used_at": deref_string(two_factor.last_used_at),
                "backup_codes_remaining": int(two_factor.backup_codes_remaining or 0),
            },
            "verified_at",
            "last_used_at",
        )

    api_keys = db.query(UserAPIKey).filter(UserAPIKey.user_id == user_id).all()
    data["api_keys"] = [
        _compact(
            {
                "id": k.id,
                "name": k.name,
                "key_preview": k.key_preview,
                "is_active": bool(k.is_active),
                "usage_count": int(k.usage_count or 0),
                "last_used_at": deref_string(k.last_used_at),
                "created_at": _ts(k.created_at),
            },
            "last_used_at",
        )
        for k in api_keys
    ]

    providers = db.query(OAuthProvider).filter(OAuthProvider.user_id == user_id).all()
    data["oauth_providers"] = [
        {"provider": p.provider, "email": p.email or "", "linked_at": _ts(p.created_at)}
        for p in providers
    ]

    files = db.query(File).filter(File.user_id == user_id).all()
    data["files"] = [
        {
            "id": f.id,
            "file_name": f.file_name,
            "file_size": int(f.file_size or 0),
            "content_type": f.content_type,
            "created_at": _ts(f.created_at),
        }
        for f in files
    ]

    members = (
        db.query(OrganizationMember)
        .options(joinedload(OrganizationMember.organization))
        .filter(OrganizationMember.user_id == user_id)
        .all()
    )
    data["organizations"] = [
        {
            "organization_name": m.organization.name,
            "organization_slug": m.organization.slug,
            "role": m.role,
            "joined_at": _ts(m.created_at),
        }
        for m in members
        if m.organization is not None
    ]

    audit_logs = (
        db.query(AuditLog)
        .filter(or_(AuditLog.user_id == user_id, AuditLog.target_id == user_id))
        .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .limit(AUDIT_LOG_LIMIT)
        .all()
    )
    data["audit_logs"] = [
        _compact(
            {
                "action": log.action,
                "description": f"{log.action} on {log.target_type}",
                "ip_address": log.ip_address,
                "created_at": _ts(log.created_at),
            },
            "ip_address",
        )
        for log in audit_logs
    ]

    # Sections with no rows are left out of the document entirely
    for key in ("sessions", "login_history", "api_keys", "oauth_providers", "files", "organizations", "audit_logs"):
        if not data[key]:
            del data[key]
    return data


def build_export_archive(user_id: int, data: Dict[str, Any], generated_at: Optional[datetime] = None) -> bytes:
    """Zip ``user_data.json`` and a README into an in-memory archive."""
    generated_at = generated_at or datetime.now(timezone.utc)
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as z:
        z.writestr(ARCHIVE_DATA_NAME, json.dumps(data, ensure_ascii=False, indent=2))
        z.writestr(
            ARCHIVE_README_NAME,
            README_TEMPLATE.format(user_id=user_id, generated_at=_ts(generated_at)),
        )
    return buf.getvalue()


def write_local_archive(exports_dir: str, filename: str, content: bytes) -> str:
    """Write atomically so a retried job never sees a half-written zip."""
    os.makedirs(exports_dir, exist_ok=True)
    out_path = os.path.join(exports_dir, filename)
    fd, tmp_path = tempfile.mkstemp(prefix=".export_", suffix=".zip.tmp", dir=exports_dir)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(content)
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, out_path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise
    return out_path
