"""
Approval Token Service
One-time tokens embedded in approval emails.

Each notified approver gets a pair of tokens for a leave request, one for the
"approve" link and one for the "reject" link. A token can be redeemed exactly
once; redemption is a single conditional UPDATE, so when two clicks race only
one of them sees rowcount == 1.
"""

import os
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional
from urllib.parse import urlencode

from dotenv import load_dotenv
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import ApprovalToken
from utils import utc_now
import logging

load_dotenv()

logger = logging.getLogger(__name__)

ACTIONS = ("approve", "reject")


@dataclass(frozen=True)
class ApprovalTokenPair:
    approve_token: str
    reject_token: str


def _mask(token: str) -> str:
    return f"{(token or '')[:8]}..."


class ApprovalTokenService:
    """
    Issue, redeem and clean up approval tokens.

    - 64 hex characters from `secrets.token_hex(32)` (256 bits)
    - Expire after APPROVAL_TOKEN_TTL_DAYS (default 7)
    - Expired rows are purged before every redemption and nightly by the scheduler
    """

    TOKEN_BYTES = 32
    MAX_ATTEMPTS = 3
    TTL_DAYS = int(os.getenv("APPROVAL_TOKEN_TTL_DAYS", "7"))

    @staticmethod
    def generate_token() -> str:
        return secrets.token_hex(ApprovalTokenService.TOKEN_BYTES)

    @staticmethod
    def issue(db: Session, leave_id: int, approver_email: str, approver_role: str) -> ApprovalTokenPair:
        """
        Persist an approve/reject token pair for one approver and commit.

        A generated token that collides with a stored one is replaced by a
        fresh one; only tokens that were actually stored are returned.
        """
        email = (approver_email or "").strip().lower()
        role = (approver_role or "").strip().lower()
        expires_at = utc_now() + timedelta(days=ApprovalTokenService.TTL_DAYS)

        tokens = {}
        for action in ACTIONS:
            for attempt in range(1, ApprovalTokenService.MAX_ATTEMPTS + 1):
                token = ApprovalTokenService.generate_token()
                try:
                    with db.begin_nested():
                        db.add(ApprovalToken(
                            token=token,
                            leave_id=leave_id,
                            approver_email=email,
                            approver_role=role,
                            action=action,
                            used=False,
                            expires_at=expires_at,
                        ))
                        db.flush()
                except IntegrityError:
                    logger.warning(
                        f"⚠️  Approval token {_mask(token)} already exists "
                        f"(attempt {attempt}/{ApprovalTokenService.MAX_ATTEMPTS}), regenerating"
                    )
                    if attempt == ApprovalTokenService.MAX_ATTEMPTS:
                        db.rollback()
                        raise
                    continue
                tokens[action] = token
                break

        db.commit()
        logger.info(
            f"🔐 Issued approval tokens for leave {leave_id} -> {email} ({role}), "
            f"expires {expires_at.strftime('%Y-%m-%d %H:%M:%S UTC')}"
        )
        return ApprovalTokenPair(approve_token=tokens["approve"], reject_token=tokens["reject"])

    @staticmethod
    def purge_expired(db: Session, commit: bool = True) -> int:
        deleted = db.query(ApprovalToken).filter(
            ApprovalToken.expires_at <= utc_now()
        ).delete(synchronize_session=False)
        if commit:
            db.commit()
        if deleted:
            logger.info(f"🗑️  Purged {deleted} expired approval token(s)")
        return deleted

    @staticmethod
    def verify_and_consume(db: Session, token: str) -> Optional[ApprovalToken]:
        """
        Redeem `token`. Returns the token row on the first successful
        redemption, None if the token is unknown, used or expired.
        """
        if not token:
            return None

        ApprovalTokenService.purge_expired(db, commit=False)

        now = utc_now()
        claimed = db.query(ApprovalToken).filter(
            ApprovalToken.token == token,
            ApprovalToken.used == False,
            ApprovalToken.expires_at > now,
        ).update(
            {ApprovalToken.used: True, ApprovalToken.used_at: now},
            synchronize_session=False,
        )

        if claimed != 1:
            db.commit()
            logger.warning(f"❌ Approval token {_mask(token)} is invalid, expired or already used")
            return None

        record = db.query(ApprovalToken).populate_existing().filter(ApprovalToken.token == token).first()
        db.commit()
        logger.info(
            f"✅ Approval token {_mask(token)} redeemed for leave {record.leave_id} "
            f"by {record.approver_email} ({record.approver_role})"
        )
        return record

    @staticmethod
    def base_url() -> str:
        return (os.getenv("FRONTEND_URL") or os.getenv("BASE_URL") or "http://localhost:3000").rstrip("/")

    @staticmethod
    def approval_link(token: str, action: str) -> str:
        query = urlencode({"token": token, "action": action})
        return f"{ApprovalTokenService.base_url()}/leave/email-action?{query}"
