from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    password = Column(String(255), nullable=False)
    email_verified = Column(Boolean, default=False)
    is_active = Column(Boolean, default=True)
    role = Column(String(20), nullable=False, default="user")
    avatar_url = Column(String(500), nullable=True)
    bio = Column(Text, nullable=True)
    location = Column(String(100), nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class UserPreferences(Base):
    __tablename__ = "user_preferences"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)
    theme = Column(String(20), default="system")
    timezone = Column(String(50), default="UTC")
    language = Column(String(10), default="en")
    date_format = Column(String(20), default="MM/DD/YYYY")
    time_format = Column(String(10), default="12h")
    email_notifications = Column(JSON, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class UserSession(Base):
    __tablename__ = "user_sessions"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    session_token_hash = Column(String(64), nullable=False, unique=True)
    device_info = Column(JSON, nullable=True)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)
    location = Column(JSON, nullable=True)
    is_current = Column(Boolean, default=False)
    last_active_at = Column(DateTime, server_default=func.now())
    expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())


class LoginHistory(Base):
    __tablename__ = "login_history"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    success = Column(Boolean, nullable=False)
    failure_reason = Column(String(100), nullable=True)
    ip_address = Column(String(45), nullable=False, default="")
    user_agent = Column(Text, nullable=True)
    device_info = Column(JSON, nullable=True)
    location = Column(JSON, nullable=True)
    auth_method = Column(String(20), default="password")
    session_id = Column(Integer, nullable=True)
    created_at = Column(DateTime, server_default=func.now())


class UserTwoFactor(Base):
    __tablename__ = "user_two_factors"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)
    encrypted_secret = Column(Text, nullable=False)
    is_enabled = Column(Boolean, default=False)
    backup_codes_hash = Column(JSON, nullable=True)
    backup_codes_remaining = Column(Integer, default=10)
    verified_at = Column(String(40), nullable=True)
    last_used_at = Column(String(40), nullable=True)
    failed_attempts = Column(Integer, default=0)
    created_at = Column(DateTime, server_default=func.now())


class UserAPIKey(Base):
    __tablename__ = "user_api_keys"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    key_hash = Column(String(128), nullable=False)
    key_preview = Column(String(20), nullable=False, default="")
    is_active = Column(Boolean, default=True)
    usage_count = Column(Integer, default=0)
    last_used_at = Column(String(40), nullable=True)
    created_at = Column(DateTime, server_default=func.now())


class OAuthProvider(Base):
    __tablename__ = "oauth_providers"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    provider = Column(String(30), nullable=False)
    provider_user_id = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    access_token = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
