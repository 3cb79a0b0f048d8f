# app/services/ledger.py
"""
License ledger: the authority on who has paid for what.

At most one license exists per (resource, buyer). Buyer addresses are
stored lowercase so the uniqueness constraint is case-insensitive.
"""
import logging
import sqlite3
import uuid
from typing import Optional

from app.services.database import Database, License, utc_now
from app.x402.errors import LicenseAlreadyExists

logger = logging.getLogger(__name__)


def normalize_address(address: str) -> str:
    return address.lower()


class LicenseLedger:

    def __init__(self, database: Database):
        self._db = database

    def find_license(self, resource_id: str, buyer_address: str) -> Optional[License]:
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM licenses WHERE resource_id = ? AND buyer_address = ?",
                (resource_id, normalize_address(buyer_address)),
            ).fetchone()
        if row is None:
            return None
        return License(**dict(row))

    def create_license(
        self,
        resource_id: str,
        buyer_address: str,
        payee_address: str,
        price: str,
        transaction_ref: str,
    ) -> License:
        """
        Record a settled purchase.

        Raises:
            LicenseAlreadyExists: If the buyer already holds a license for the resource
        """
        license = License(
            id=str(uuid.uuid4()),
            resource_id=resource_id,
            buyer_address=normalize_address(buyer_address),
            payee_address=payee_address,
            price=price,
            transaction_ref=transaction_ref,
            issued_at=utc_now(),
        )
        try:
            with self._db.connect() as conn:
                conn.execute(
                    """
                    INSERT INTO licenses
                    (id, resource_id, buyer_address, payee_address, price, transaction_ref, issued_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (license.id, license.resource_id, license.buyer_address,
                     license.payee_address, license.price, license.transaction_ref,
                     license.issued_at),
                )
        except sqlite3.IntegrityError as e:
            if "UNIQUE" not in str(e):
                raise
            logger.warning(
                f"License insert rejected for resource {resource_id}, buyer {buyer_address}: {e}"
            )
            raise LicenseAlreadyExists(
                f"Buyer {buyer_address} already licensed resource {resource_id}"
            ) from e

        logger.info(
            f"Issued license {license.id} for resource {resource_id} to {license.buyer_address} "
            f"(tx {transaction_ref})"
        )
        return license
