"""Load document routes."""
from typing import Optional

from fastapi import APIRouter, Depends

from freightline.core.auth import CallerContext, get_caller
from freightline.models.documents import Document, DocumentCreateRequest, DocumentVerifyRequest, UploadUrlRequest
from freightline.routers.deps import IdempotencyKey, idempotent, platform
from freightline.services.platform import FreightPlatform

router = APIRouter(tags=["documents"])


@router.post("/loads/{load_id}/documents/upload-url")
def request_upload_url(
    load_id: str,
    request: UploadUrlRequest,
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    """Get an opaque endpoint to upload the file to before recording it."""
    return services.documents.request_upload_url(context.user_id, load_id, request)


@router.post("/loads/{load_id}/documents", status_code=201)
def create_document(
    load_id: str,
    request: DocumentCreateRequest,
    idempotency_key: Optional[str] = IdempotencyKey,
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    with idempotent(services, context, f"create_document:{load_id}", idempotency_key) as slot:
        if slot.cached is not None:
            return slot.cached
        document = services.documents.create_document(context.user_id, load_id, request)
        return slot.store(document)


@router.get("/loads/{load_id}/documents")
def list_documents(
    load_id: str,
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    documents = services.documents.get_documents(context.user_id, load_id)
    return {"documents": documents, "total": len(documents)}


@router.post("/documents/{document_id}/verify", response_model=Document)
def verify_document(
    document_id: str,
    request: DocumentVerifyRequest,
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    return services.documents.verify_document(context.user_id, document_id, request)


@router.delete("/documents/{document_id}")
def delete_document(
    document_id: str,
    context: CallerContext = Depends(get_caller),
    services: FreightPlatform = Depends(platform),
):
    document = services.documents.delete_document(context.user_id, document_id)
    return {"status": "deleted", "document_id": document.document_id}
