"""
Token ledger: per-user credit balances with atomic debits.

All balance mutation is a single conditional UPDATE, so concurrent debits from
any number of threads or processes can never overdraw or lose an update.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from .database_models import TokenBalance, TokenTransaction, db_manager

logger = logging.getLogger(__name__)


class TokenLedger:
    """Reads and mutates ``token_balances``"""

    def try_debit(self, user_id: str, amount: int, batch_id: Optional[str] = None,
                  description: Optional[str] = None) -> bool:
        """Debit ``amount`` tokens if the balance covers it.

        Returns True when the balance was decremented, False (balance
        untouched) when it was insufficient or the user has no balance row.
        """
        if amount <= 0:
            raise ValueError("Debit amount must be positive")

        with db_manager.get_session() as session:
            stmt = (
                update(TokenBalance)
                .where(TokenBalance.user_id == user_id)
                .where(TokenBalance.available_tokens >= amount)
                .values(
                    available_tokens=TokenBalance.available_tokens - amount,
                    total_tokens_used=TokenBalance.total_tokens_used + amount,
                    total_image_processed=TokenBalance.total_image_processed + 1,
                    updated_at=datetime.now(timezone.utc),
                )
                .execution_options(synchronize_session=False)
            )
            result = session.execute(stmt)
            if result.rowcount != 1:
                session.rollback()
                logger.info(
                    f"Debit of {amount} refused for user {user_id}: insufficient tokens")
                return False

            session.add(TokenTransaction(
                user_id=user_id,
                action_type='usage',
                count=amount,
                description=description or 'Image metadata generation',
                batch_id=batch_id,
            ))
            session.commit()
            return True

    def refund(self, user_id: str, amount: int, batch_id: Optional[str] = None,
               description: Optional[str] = None) -> bool:
        """Return a debit whose result was discarded; False when the user has no balance row"""
        if amount <= 0:
            raise ValueError("Refund amount must be positive")

        with db_manager.get_session() as session:
            result = session.execute(
                update(TokenBalance)
                .where(TokenBalance.user_id == user_id)
                .values(
                    available_tokens=TokenBalance.available_tokens + amount,
                    total_tokens_used=TokenBalance.total_tokens_used - amount,
                    total_image_processed=TokenBalance.total_image_processed - 1,
                    updated_at=datetime.now(timezone.utc),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                session.rollback()
                return False

            session.add(TokenTransaction(
                user_id=user_id,
                action_type='refund',
                count=amount,
                description=description or 'Refund',
                batch_id=batch_id,
            ))
            session.commit()

        logger.info(f"Refunded {amount} tokens to user {user_id} (batch {batch_id})")
        return True

    def get_balance(self, user_id: str) -> int:
        with db_manager.get_session() as session:
            balance = session.get(TokenBalance, user_id)
            return balance.available_tokens if balance else 0

    def credit(self, user_id: str, amount: int, description: Optional[str] = None) -> int:
        """Add purchased tokens; used by billing and admin tooling, never by the pipeline"""
        if amount <= 0:
            raise ValueError("Credit amount must be positive")

        for attempt in range(2):
            with db_manager.get_session() as session:
                result = session.execute(
                    update(TokenBalance)
                    .where(TokenBalance.user_id == user_id)
                    .values(
                        available_tokens=TokenBalance.available_tokens + amount,
                        total_tokens_purchased=TokenBalance.total_tokens_purchased + amount,
                        updated_at=datetime.now(timezone.utc),
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    session.add(TokenBalance(
                        user_id=user_id,
                        available_tokens=amount,
                        total_tokens_used=0,
                        total_tokens_purchased=amount,
                        total_image_processed=0,
                    ))
                session.add(TokenTransaction(
                    user_id=user_id,
                    action_type='purchase',
                    count=amount,
                    description=description or 'Token purchase',
                ))
                try:
                    session.commit()
                except IntegrityError:
                    # Balance row created concurrently; retry as an update
                    session.rollback()
                    if attempt:
                        raise
                    continue

            logger.info(f"Credited {amount} tokens to user {user_id}")
            return self.get_balance(user_id)

    def get_history(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recent ledger transactions for a user"""
        with db_manager.get_session() as session:
            rows = (session.query(TokenTransaction)
                    .filter(TokenTransaction.user_id == user_id)
                    .order_by(TokenTransaction.created_at.desc())
                    .limit(limit)
                    .all())
            return [row.to_dict() for row in rows]


# Global ledger instance
token_ledger = TokenLedger()
