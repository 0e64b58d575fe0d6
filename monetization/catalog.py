"""
Narrow mirror of the content owned by the posts/streams collaborators.

Only what access checks and purchases need is kept: owner, visibility,
price and the disabled flag.
"""

from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from .errors import NotFoundError, ValidationError
from .models import Content, ContentKind, Visibility
from .money import Money
from .storage import ContentRecord


class ContentCatalog:
    def upsert(
        self,
        session: Session,
        content_id: UUID,
        kind: ContentKind,
        creator_id: UUID,
        visibility: Visibility,
        price_cents: int = 0,
        is_disabled: bool = False,
    ) -> Content:
        price = Money.of(price_cents)
        if price.cents < 0:
            raise ValidationError("Price cannot be negative", reason="invalid_amount")
        visibility = Visibility(visibility)
        if visibility == Visibility.PPV and not price.is_positive():
            raise ValidationError("PPV content needs a positive price", reason="invalid_amount")

        record = session.get(ContentRecord, content_id)
        if record is None:
            record = ContentRecord(id=content_id)
            session.add(record)
        record.kind = ContentKind(kind)
        record.creator_id = creator_id
        record.visibility = visibility
        record.price_cents = price.cents
        record.is_disabled = is_disabled
        session.flush()
        return Content.model_validate(record)

    def get(self, session: Session, content_id: UUID, kind: ContentKind) -> Optional[Content]:
        record = session.get(ContentRecord, content_id)
        if record is None or record.kind != ContentKind(kind):
            return None
        return Content.model_validate(record)

    def require(self, session: Session, content_id: UUID, kind: ContentKind) -> Content:
        """Active content or ``NotFoundError``; disabled content counts as missing."""
        content = self.get(session, content_id, kind)
        if content is None or content.is_disabled:
            raise NotFoundError(f"{ContentKind(kind).value.title()} {content_id} not found")
        return content
