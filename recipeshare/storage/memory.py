from __future__ import annotations

import hmac
import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from recipeshare.logging import get_logger
from recipeshare.storage.errors import ConstraintViolation
from recipeshare.storage.models import (
    OtpChallenge,
    Post,
    Role,
    Session,
    StoredFile,
    User,
    UserCredential,
    new_id,
    utcnow,
)


class MemoryStore:
    """In-memory backing store used for tests and local development.

    Every public method runs under one re-entrant lock, so multi-record
    operations (OTP issue, session rotation, cascading delete) are atomic
    with respect to concurrent requests.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, UserCredential] = {}
        self.sessions: Dict[str, Session] = {}
        self.otp_challenges: Dict[str, OtpChallenge] = {}
        self.posts: Dict[str, Post] = {}
        self.files: Dict[str, StoredFile] = {}
        # RLock so helpers can nest acquisitions within the same thread
        self._data_lock = threading.RLock()

    # users
    def create_user(self, name: str, email: str, role: Role = Role.USER) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(id=new_id(), name=name, email=normalized, role=Role(role))
            self.users[user.id] = user
            return user

    def create_user_with_password(
        self,
        name: str,
        email: str,
        role: Role,
        password_hash: str,
        password_algo: str,
    ) -> User:
        """Insert the account and its credential together or not at all."""
        with self._data_lock:
            user = self.create_user(name, email, role)
            try:
                self.save_password(user.id, password_hash, password_algo)
            except Exception:
                self.users.pop(user.id, None)
                raise
            return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            results = list(self.users.values())
            return sorted(results, key=lambda u: u.created_at, reverse=True)[:limit]

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            removed_files = [fid for fid, f in self.files.items() if f.user_id == user_id]
            removed_posts = [pid for pid, p in self.posts.items() if p.user_id == user_id]
            removed_otps = [
                cid for cid, c in self.otp_challenges.items() if c.user_id == user_id
            ]
            removed_sessions = [
                sid for sid, s in self.sessions.items() if s.user_id == user_id
            ]
            for fid in removed_files:
                self.files.pop(fid, None)
            for pid in removed_posts:
                self.posts.pop(pid, None)
            for cid in removed_otps:
                self.otp_challenges.pop(cid, None)
            for sid in removed_sessions:
                self.sessions.pop(sid, None)
            self.credentials.pop(user_id, None)
            self.users.pop(user_id, None)
            self.logger.info(
                "user_cascade_deleted",
                user_id=user_id,
                files=len(removed_files),
                posts=len(removed_posts),
                otp_challenges=len(removed_otps),
                sessions=len(removed_sessions),
            )
            return True

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = UserCredential(
                user_id=user_id, password_hash=password_hash, password_algo=password_algo
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            cred = self.credentials.get(user_id)
            if not cred:
                return None
            return cred.password_hash, cred.password_algo

    # one-time codes
    def issue_otp(self, user_id: str, code: str, expires_at: datetime) -> OtpChallenge:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            for challenge in self.otp_challenges.values():
                if challenge.user_id == user_id and not challenge.consumed:
                    challenge.consumed = True
            challenge = OtpChallenge(
                id=new_id(), user_id=user_id, code=code, expires_at=expires_at
            )
            self.otp_challenges[challenge.id] = challenge
            return replace(challenge)

    def consume_otp(self, user_id: str, code: str, now: datetime) -> bool:
        with self._data_lock:
            for challenge in self.otp_challenges.values():
                if challenge.user_id != user_id or not challenge.is_live(now):
                    continue
                if hmac.compare_digest(challenge.code, code):
                    challenge.consumed = True
                    return True
            return False

    def purge_otp_challenges(self, now: datetime) -> int:
        with self._data_lock:
            stale = [
                cid for cid, c in self.otp_challenges.items() if not c.is_live(now)
            ]
            for cid in stale:
                self.otp_challenges.pop(cid, None)
            return len(stale)

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id and session.user_id not in self.users:
                raise ConstraintViolation(
                    "user does not exist", {"user_id": session.user_id}
                )
            self.sessions[session.id] = replace(session)
            return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def rotate_session(self, old_session_id: Optional[str], session: Session) -> Session:
        with self._data_lock:
            if session.user_id and session.user_id not in self.users:
                raise ConstraintViolation(
                    "user does not exist", {"user_id": session.user_id}
                )
            if old_session_id:
                self.sessions.pop(old_session_id, None)
            self.sessions[session.id] = replace(session)
            return session

    def touch_session(self, session_id: str, when: datetime) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return None
            if when > sess.last_activity:
                sess.last_activity = when
            return replace(sess)

    def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            return self.sessions.pop(session_id, None) is not None

    def purge_expired_sessions(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.expires_at <= now]
            for sid in stale:
                self.sessions.pop(sid, None)
            return len(stale)

    # content owned by users; only what account removal has to clean up
    def create_post(self, user_id: str, title: str) -> Post:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            post = Post(id=new_id(), user_id=user_id, title=title)
            self.posts[post.id] = post
            return post

    def list_posts(self, user_id: Optional[str] = None) -> List[Post]:
        with self._data_lock:
            return [p for p in self.posts.values() if not user_id or p.user_id == user_id]

    def create_file(
        self, user_id: str, filename: str, post_id: Optional[str] = None
    ) -> StoredFile:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            stored = StoredFile(
                id=new_id(), user_id=user_id, filename=filename, post_id=post_id
            )
            self.files[stored.id] = stored
            return stored

    def list_files(self, user_id: Optional[str] = None) -> List[StoredFile]:
        with self._data_lock:
            return [f for f in self.files.values() if not user_id or f.user_id == user_id]
