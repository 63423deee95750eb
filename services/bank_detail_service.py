"""
Bank Detail Service
Payout bank accounts per user with a single active default
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from models import BankAccountType, BankDetail, User
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import isoformat_or_none
from utils.exception_handler import ConflictError, InvalidInputError, NotFoundError
from utils.input_validation import InputValidator

logger = logging.getLogger(__name__)


def serialize_bank_detail(detail: BankDetail) -> Dict[str, Any]:
    """Client view; the full account number never leaves the service"""
    return {
        "id": detail.id,
        "accountHolderName": detail.account_holder_name,
        "accountNumberLast4": detail.account_number_last4,
        "maskedAccountNumber": f"XXXX{detail.account_number_last4}",
        "ifscCode": detail.ifsc_code,
        "bankName": detail.bank_name,
        "accountType": detail.account_type,
        "isDefault": detail.is_default,
        "isVerified": detail.is_verified,
        "createdAt": isoformat_or_none(detail.created_at),
    }


class BankDetailService:

    @staticmethod
    def _active(session: Session, user_id: int) -> List[BankDetail]:
        return session.execute(
            select(BankDetail)
            .where(BankDetail.user_id == user_id, BankDetail.is_active.is_(True))
            .order_by(BankDetail.is_default.desc(), BankDetail.created_at.desc(), BankDetail.id.desc())
        ).scalars().all()

    @staticmethod
    def _clear_defaults(session: Session, user_id: int, keep_id: Optional[int] = None) -> None:
        stmt = update(BankDetail).where(BankDetail.user_id == user_id, BankDetail.is_default.is_(True))
        if keep_id is not None:
            stmt = stmt.where(BankDetail.id != keep_id)
        session.execute(stmt.values(is_default=False).execution_options(synchronize_session="fetch"))
        session.flush()

    def list_bank_details(self, session: Session, user: User) -> List[BankDetail]:
        return self._active(session, user.id)

    def get_active(self, session: Session, user: User, bank_detail_id: int) -> Optional[BankDetail]:
        detail = session.get(BankDetail, bank_detail_id)
        if detail is None or detail.user_id != user.id or not detail.is_active:
            return None
        return detail

    def get_default(self, session: Session, user_id: int) -> Optional[BankDetail]:
        return session.execute(
            select(BankDetail).where(
                BankDetail.user_id == user_id,
                BankDetail.is_active.is_(True),
                BankDetail.is_default.is_(True),
            )
        ).scalar_one_or_none()

    def add_bank_detail(self, session: Session, user: User, account_holder_name: str, account_number: str,
                        ifsc_code: str, bank_name: str, account_type: Optional[str] = None,
                        is_default: bool = False) -> BankDetail:
        holder = InputValidator.validate_holder_name(account_holder_name)
        number = InputValidator.validate_account_number(account_number)
        ifsc = InputValidator.validate_ifsc(ifsc_code)
        bank_name = (bank_name or "").strip()
        if not bank_name or len(bank_name) > 100:
            raise InvalidInputError("Bank name is required", [{"field": "bankName", "message": "1-100 characters"}])
        account_type = account_type or BankAccountType.SAVINGS.value
        if account_type not in {t.value for t in BankAccountType}:
            raise InvalidInputError("Invalid account type", [{"field": "accountType", "message": "savings|current"}])

        with atomic_transaction(session):
            active = self._active(session, user.id)
            if any(d.account_number == number and d.ifsc_code == ifsc for d in active):
                raise ConflictError("This bank account is already added")

            make_default = is_default or not active
            if make_default:
                self._clear_defaults(session, user.id)

            detail = BankDetail(
                user_id=user.id,
                account_holder_name=holder,
                account_number=number,
                account_number_last4=number[-4:],
                ifsc_code=ifsc,
                bank_name=bank_name,
                account_type=account_type,
                is_default=make_default,
            )
            session.add(detail)

        logger.info(
            f"🏦 BANK_DETAIL_ADDED: user {user.id} account XXXX{detail.account_number_last4} "
            f"ifsc {ifsc} default={make_default}"
        )
        return detail

    def delete_bank_detail(self, session: Session, user: User, bank_detail_id: int) -> None:
        """Soft delete; promotes the newest remaining account when the default goes"""
        with atomic_transaction(session):
            detail = self.get_active(session, user, bank_detail_id)
            if detail is None:
                raise NotFoundError("Bank detail not found")
            was_default = detail.is_default
            detail.is_active = False
            detail.is_default = False
            session.flush()

            if was_default:
                remaining = session.execute(
                    select(BankDetail)
                    .where(BankDetail.user_id == user.id, BankDetail.is_active.is_(True))
                    .order_by(BankDetail.created_at.desc(), BankDetail.id.desc())
                    .limit(1)
                ).scalar_one_or_none()
                if remaining is not None:
                    remaining.is_default = True
                    logger.info(f"🏦 BANK_DEFAULT_PROMOTED: user {user.id} -> bank detail {remaining.id}")

        logger.info(f"🗑️ BANK_DETAIL_REMOVED: user {user.id} bank detail {bank_detail_id}")

    def set_default(self, session: Session, user: User, bank_detail_id: int) -> BankDetail:
        with atomic_transaction(session):
            detail = self.get_active(session, user, bank_detail_id)
            if detail is None:
                raise NotFoundError("Bank detail not found")
            self._clear_defaults(session, user.id, keep_id=detail.id)
            detail.is_default = True

        logger.info(f"🏦 BANK_DEFAULT_SET: user {user.id} -> bank detail {detail.id}")
        return detail


bank_detail_service = BankDetailService()


def get_bank_detail_service() -> BankDetailService:
    return bank_detail_service
