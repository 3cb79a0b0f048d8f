# app/x402/publisher.py
"""Publishing: encrypt content, store blobs, wrap the key, insert the row."""
import logging
from typing import Optional

from app.services.content_store import ContentStore
from app.services.database import Database, Resource
from app.x402.requirements import to_minor_units
from app.x402.vault import KeyVault, encrypt_content, generate_content_key, key_to_hex

logger = logging.getLogger(__name__)


class ResourcePublisher:

    def __init__(self, database: Database, store: ContentStore, vault: KeyVault, decimals: int = 6):
        self._db = database
        self._store = store
        self._vault = vault
        self._decimals = decimals

    def publish(
        self,
        plain_bytes: bytes,
        preview_bytes: bytes,
        owner_address: str,
        price: str,
        title: str,
        description: Optional[str] = None,
        mime_type: str = "image/jpeg",
        width: Optional[int] = None,
        height: Optional[int] = None,
    ) -> Resource:
        # Fails here, not at first sale, when the price is unusable
        to_minor_units(price, self._decimals)

        key = generate_content_key()
        wrapped_key = self._vault.wrap(key_to_hex(key))

        content_locator = self._store.put(encrypt_content(plain_bytes, key))
        preview_locator = self._store.put(preview_bytes, content_type=mime_type)

        resource = self._db.insert_resource(
            owner_address=owner_address,
            price=price,
            title=title,
            description=description,
            content_locator=content_locator,
            preview_locator=preview_locator,
            wrapped_key=wrapped_key,
            mime_type=mime_type,
            width=width,
            height=height,
        )
        logger.info(f"Published resource {resource.id} ({len(plain_bytes)} bytes) at price {price}")
        return resource
