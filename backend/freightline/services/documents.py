"""Load document records: upload endpoints, verification and removal."""
from __future__ import annotations

import secrets
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

from freightline.core.errors import DOCUMENT_ACCESS_DENIED, ForbiddenError, InvalidStateError
from freightline.core.logging import logger
from freightline.models.audit import HistoryAction, HistoryDetails, Notification, NotificationType
from freightline.models.base import utcnow
from freightline.models.documents import (
    Document,
    DocumentCreateRequest,
    DocumentType,
    DocumentVerifyRequest,
    UploadUrlRequest,
    VerificationStatus,
)
from freightline.models.loads import Load
from freightline.models.users import User, UserRole
from freightline.services.access import AccessGate, Intent
from freightline.services.audit import AuditTrail
from freightline.services.notifications import NotificationCenter
from freightline.services.state import FreightStateStore


SHIPPER_NOTIFIED_TYPES = frozenset({DocumentType.BOL, DocumentType.POD})
VERIFIER_ROLES = (UserRole.SHIPPER, UserRole.CARRIER)


class DocumentService:
    def __init__(
        self,
        store: FreightStateStore,
        gate: AccessGate,
        audit: AuditTrail,
        notifications: NotificationCenter,
        *,
        upload_base_url: str,
        max_upload_size: int,
    ) -> None:
        self._store = store
        self._gate = gate
        self._audit = audit
        self._notifications = notifications
        self._upload_base_url = upload_base_url.rstrip("/")
        self._max_upload_size = max_upload_size

    def _document(self, user: User, document_id: str, intent: Intent) -> Tuple[Document, Load]:
        """A document with its load, hidden the same way whether missing or denied."""
        row = self._store.get("documents", document_id)
        if row is None:
            raise self._gate.not_found(user, "Document", DOCUMENT_ACCESS_DENIED)
        document = Document.model_validate(row)
        load_row = self._store.get("loads", document.load_id)
        if load_row is None:
            raise self._gate.not_found(user, "Document", DOCUMENT_ACCESS_DENIED)
        load = Load.model_validate(load_row)
        if not self._gate.can_access(user, load, intent):
            logger.warning("Document access denied", user_id=user.user_id, document_id=document_id, intent=intent.value)
            raise ForbiddenError(DOCUMENT_ACCESS_DENIED)
        return document, load

    def request_upload_url(self, caller_id: Optional[str], load_id: str, request: UploadUrlRequest) -> Dict[str, Any]:
        """Opaque one-shot upload endpoint. Nothing is persisted."""
        self._gate.require_load(caller_id, load_id, Intent.WRITE)
        token = secrets.token_urlsafe(24)
        query = urlencode({"token": token, "load_id": load_id, "fileName": request.file_name, "fileType": request.file_type})
        return {
            "upload_url": f"{self._upload_base_url}?{query}",
            "max_upload_size": self._max_upload_size,
        }

    def create_document(self, caller_id: Optional[str], load_id: str, request: DocumentCreateRequest) -> Document:
        with self._store.transaction():
            user, load = self._gate.require_load(caller_id, load_id, Intent.WRITE)
            if request.file_size > self._max_upload_size:
                raise InvalidStateError(f"File exceeds the maximum upload size of {self._max_upload_size} bytes")
            document = Document(
                document_id=self._store.next_id("DOC"),
                load_id=load_id,
                user_id=user.user_id,
                **request.model_dump(),
            )
            self._store.put("documents", document)
            self._audit.record(
                load_id=load_id,
                user_id=user.user_id,
                event_type="document_uploaded",
                new_value=document.type,
                notes=f"Uploaded {document.type.label}: {document.name}",
                metadata={"document_id": document.document_id},
            )
            sent = self._notify_upload(load, document)

        logger.info("Document created", document_id=document.document_id, load_id=load_id, type=document.type.value)
        self._notifications.deliver(sent)
        return document

    def _notify_upload(self, load: Load, document: Document) -> List[Notification]:
        title = f"{document.type.label} Uploaded"
        message = f"A {document.type.label} has been uploaded for load {load.reference_number}."
        action_url = f"/loads/{load.load_id}/documents"
        if document.type in SHIPPER_NOTIFIED_TYPES:
            return [
                self._notifications.notify(
                    load.shipper_id,
                    NotificationType.DOCUMENT_UPLOADED,
                    title,
                    message,
                    related_id=load.load_id,
                    action_required=True,
                    action_url=action_url,
                )
            ]
        if document.type == DocumentType.RATE_CONFIRMATION and load.carrier_id:
            return self._notifications.notify_carrier(
                load.carrier_id,
                NotificationType.DOCUMENT_UPLOADED,
                title,
                message,
                related_id=load.load_id,
                action_required=True,
                action_url=action_url,
            )
        return []

    def verify_document(self, caller_id: Optional[str], document_id: str, request: DocumentVerifyRequest) -> Document:
        user = self._gate.require_user(caller_id)
        self._gate.require_role(user, *VERIFIER_ROLES, action="verify documents")
        if request.verification_status == VerificationStatus.PENDING:
            raise InvalidStateError("Verification status must be verified or rejected")

        with self._store.transaction():
            document, load = self._document(user, document_id, Intent.WRITE)
            if document.verification_status != VerificationStatus.PENDING:
                raise InvalidStateError(f"Document is already {document.verification_status.value}")

            now = utcnow()
            document = document.model_copy(
                update={
                    "verification_status": request.verification_status,
                    "verified_by": user.user_id,
                    "verified_at": now,
                    "notes": request.notes or document.notes,
                    "updated_at": now,
                }
            )
            self._store.put("documents", document)
            self._audit.record(
                load_id=document.load_id,
                user_id=user.user_id,
                event_type="document_verified",
                previous_value=VerificationStatus.PENDING,
                new_value=request.verification_status,
                notes=f"Document {document.name} {request.verification_status.value}",
                metadata={"document_id": document_id},
                action_type=HistoryAction.DOCUMENT_VERIFIED.value,
                details=HistoryDetails(
                    before={"verification_status": VerificationStatus.PENDING.value},
                    after={"verification_status": request.verification_status.value},
                    description=f"{document.type.label} {document.name} {request.verification_status.value}",
                    metadata={"document_id": document_id, "type": document.type.value},
                ),
            )
            sent: List[Notification] = []
            if document.user_id != user.user_id:
                sent.append(
                    self._notifications.notify(
                        document.user_id,
                        NotificationType.DOCUMENT_VERIFIED,
                        f"{document.type.label} {request.verification_status.value}",
                        f"Your document {document.name} for load {load.reference_number} was {request.verification_status.value}.",
                        related_id=document.load_id,
                    )
                )

        logger.info("Document verified", document_id=document_id, status=request.verification_status.value)
        self._notifications.deliver(sent)
        return document

    def delete_document(self, caller_id: Optional[str], document_id: str) -> Document:
        user = self._gate.require_user(caller_id)
        with self._store.transaction():
            document, load = self._document(user, document_id, Intent.READ)
            is_owner_shipper = user.role == UserRole.SHIPPER and load.shipper_id == user.user_id
            if not (user.role == UserRole.ADMIN or document.user_id == user.user_id or is_owner_shipper):
                logger.warning("Document delete denied", user_id=user.user_id, document_id=document_id)
                raise ForbiddenError("Only the uploader, the load's shipper or an admin can delete this document")

            self._store.delete("documents", document_id)
            self._audit.record(
                load_id=document.load_id,
                user_id=user.user_id,
                event_type="document_deleted",
                previous_value=document.name,
                notes=f"Deleted {document.type.label}: {document.name}",
                metadata={"document_id": document_id},
            )

        logger.info("Document deleted", document_id=document_id, load_id=document.load_id)
        return document

    def get_documents(self, caller_id: Optional[str], load_id: str) -> List[Dict[str, Any]]:
        """Documents newest first, each with uploader and verifier summaries."""
        self._gate.require_load(caller_id, load_id)
        rows = self._store.find("documents", where={"load_id": load_id}, order_by="created_at")
        users: Dict[str, Optional[User]] = {}

        def summary(user_id: Optional[str]) -> Optional[Dict[str, Any]]:
            if not user_id:
                return None
            if user_id not in users:
                users[user_id] = self._gate.get_user(user_id)
            user = users[user_id]
            return user.summary() if user else None

        documents = []
        for row in rows:
            document = Document.model_validate(row)
            entry = document.model_dump(mode="json")
            entry["uploaded_by"] = summary(document.user_id)
            entry["verified_by_user"] = summary(document.verified_by)
            documents.append(entry)
        return documents
