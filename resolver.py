"""Identity clustering over partial email/phone submissions.

A cluster is one primary contact plus the secondaries whose ``linkedId``
points at it. Links are kept flat: a secondary always points straight at a
primary, so finding a contact's primary is a single lookup.
"""
import logging
from typing import Iterable, List, Optional, Sequence

from db_models import Contact, ContactResponse, LinkPrecedence
from db_setup import ContactStore
from errors import DataIntegrityViolation, StoreError, ValidationError

logger = logging.getLogger(__name__)


def normalize(value: Optional[str]) -> Optional[str]:
    """Trim a submitted field; blank counts as absent."""
    if value is None:
        return None
    value = value.strip()
    return value or None


def ordered_unique(values: Iterable[Optional[str]]) -> List[str]:
    seen = set()
    result = []
    for value in values:
        if value is None or value in seen:
            continue
        seen.add(value)
        result.append(value)
    return result


class IdentityResolver:
    def __init__(self, store: ContactStore):
        self.store = store

    def resolve(self, email: Optional[str] = None, phone_number: Optional[str] = None) -> ContactResponse:
        """Match, link or merge the submission and return its consolidated cluster.

        Raises ValidationError when neither field carries a value; nothing is
        read or written in that case. The lookup, the decision and every write
        run inside one store transaction.
        """
        email = normalize(email)
        phone = normalize(phone_number)
        if email is None and phone is None:
            raise ValidationError("Either email or phoneNumber must be provided")

        with self.store.transaction():
            return self._resolve(email, phone)

    def _resolve(self, email: Optional[str], phone: Optional[str]) -> ContactResponse:
        matches = self.store.find_matching(email, phone)

        if not matches:
            contact = self.store.create_contact(email, phone)
            logger.info("Created primary contact %s", contact.id)
            return self.build_response([contact], contact.id)

        primaries = self._matched_primaries(matches)

        if len(primaries) == 1:
            primary = primaries[0]
            if self._has_new_info(primary, email, phone):
                secondary = self.store.create_contact(
                    email, phone, primary.id, LinkPrecedence.SECONDARY
                )
                logger.info("Linked new secondary %s to primary %s", secondary.id, primary.id)
            return self.consolidate(primary.id)

        survivor = self._merge(primaries)
        # a merge always records the submission, even when it adds nothing new
        secondary = self.store.create_contact(email, phone, survivor.id, LinkPrecedence.SECONDARY)
        logger.info("Linked merging submission as secondary %s of %s", secondary.id, survivor.id)
        return self.consolidate(survivor.id)

    def _matched_primaries(self, matches: Sequence[Contact]) -> List[Contact]:
        primaries = [contact for contact in matches if contact.is_primary]
        if primaries:
            return primaries

        resolved = {}
        for secondary in matches:
            primary = self._primary_of(secondary)
            resolved.setdefault(primary.id, primary)
        return list(resolved.values())

    @staticmethod
    def _has_new_info(primary: Contact, email: Optional[str], phone: Optional[str]) -> bool:
        return (email is not None and email != primary.email) or (
            phone is not None and phone != primary.phoneNumber
        )

    def _merge(self, primaries: Sequence[Contact]) -> Contact:
        ordered = sorted(primaries, key=lambda contact: (contact.createdAt, contact.id))
        survivor, targets = ordered[0], ordered[1:]

        for target in targets:
            self.store.update_contact(
                target.id, linkPrecedence=LinkPrecedence.SECONDARY, linkedId=survivor.id
            )
            # soft-deleted rows are re-pointed too so no link ever chains
            for secondary in self.store.find_by_linked_id(target.id, include_deleted=True):
                self.store.update_contact(secondary.id, linkedId=survivor.id)

        logger.info(
            "Merged primaries %s into primary %s",
            [target.id for target in targets],
            survivor.id,
        )
        return survivor

    def _primary_of(self, contact: Contact) -> Contact:
        if contact.is_primary:
            return contact
        if contact.linkedId is None:
            raise self._violation(contact.id, "secondary has no linkedId")

        primary = self.store.get_contact(contact.linkedId)
        if primary is None:
            raise self._violation(contact.id, f"linked to missing contact {contact.linkedId}")
        if not primary.is_primary:
            raise self._violation(contact.id, f"linked to secondary contact {primary.id}")
        return primary

    @staticmethod
    def _violation(contact_id: int, reason: str) -> DataIntegrityViolation:
        logger.error("Data integrity violation on contact %s: %s", contact_id, reason)
        return DataIntegrityViolation(contact_id, reason)

    def consolidate(self, contact_id: int) -> ContactResponse:
        """Build the response for the cluster that ``contact_id`` belongs to.

        A secondary id is accepted and resolved to its primary first.
        """
        contact = self.store.get_contact(contact_id)
        if contact is None:
            raise StoreError(f"contact {contact_id} does not exist")

        primary = self._primary_of(contact)
        return self.build_response(self.store.find_cluster(primary.id), primary.id)

    @staticmethod
    def build_response(members: Sequence[Contact], primary_id: int) -> ContactResponse:
        primary = [contact for contact in members if contact.id == primary_id]
        ranked = primary + list(members)
        return ContactResponse(
            primaryContatctId=primary_id,
            emails=ordered_unique(contact.email for contact in ranked),
            phoneNumbers=ordered_unique(contact.phoneNumber for contact in ranked),
            secondaryContactIds=[
                contact.id for contact in members if not contact.is_primary
            ],
        )
