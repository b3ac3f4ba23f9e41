"""Local read-through cache of CRM contacts."""

from sqlalchemy.exc import SQLAlchemyError

from ..database import ContactCacheRecord, Database, as_utc, utcnow
from ..errors import PersistenceError
from ..models.crm import Contact


class ContactCache:
    """Upserts are keyed by contact id, so writing the same contact twice is a no-op."""

    def __init__(self, database: Database):
        self.Session = database.Session

    def upsert(self, contact: Contact) -> Contact:
        synced_at = utcnow()
        try:
            with self.Session.begin() as session:
                session.merge(
                    ContactCacheRecord(
                        id=contact.id,
                        name=contact.name,
                        email=contact.email,
                        phone=contact.phone,
                        tags=list(contact.tags),
                        source=contact.source,
                        custom_fields=contact.custom_fields,
                        last_synced=synced_at,
                    )
                )
        except SQLAlchemyError as e:
            raise PersistenceError("upsert_contact", str(e)) from e
        return contact.model_copy(update={"last_synced": synced_at})

    def get(self, contact_id: str) -> Contact | None:
        try:
            with self.Session() as session:
                record = session.get(ContactCacheRecord, contact_id)
                if record is None:
                    return None
                return Contact(
                    id=record.id,
                    name=record.name,
                    email=record.email,
                    phone=record.phone,
                    tags=record.tags or [],
                    source=record.source,
                    custom_fields=record.custom_fields or {},
                    last_synced=as_utc(record.last_synced),
                )
        except SQLAlchemyError as e:
            raise PersistenceError("get_contact", str(e)) from e
