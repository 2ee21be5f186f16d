"""
In-process contracts for the collaborators that live outside the engines.

- DocumentGenerator: given an approved ItemHistory, returns the storage path of
  the quality document artifact. Only the path string is persisted.
- SignatureEmbedder: stamps a signer's signature into the artifact at a path.
  Invoked after a QC/PM approval commits; failures never roll it back.

Concrete implementations are chosen from config and kept in `app.extensions`.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from app.qrms.models import User
    from app.qrms.modules.items.models import ItemHistory

logger = logging.getLogger(__name__)


class CollaboratorError(RuntimeError):
    pass


class DocumentGenerator:
    def generate(self, history: ItemHistory) -> str:
        raise NotImplementedError


class SignatureEmbedder:
    def embed(self, document_path: str, signer: User, *, stage: str) -> None:
        raise NotImplementedError


@dataclass(frozen=True)
class DeferredDocumentGenerator(DocumentGenerator):
    """
    Assigns the stable artifact path `QC-<prefix>-<history id>.pdf`.
    Rendering happens in the external document service, which writes to that path.
    """

    root: str

    def generate(self, history: ItemHistory) -> str:
        if history.id is None:
            raise CollaboratorError("ItemHistory must be flushed before a document path is assigned.")
        prefix = history.item_code.split("-", 1)[0] if history.item_code else "DOC"
        project = getattr(history, "project", None)
        if project is not None:
            prefix = project.code_prefix
        root = self.root.rstrip("/")
        return f"{root}/QC-{prefix}-{history.id}.pdf"


class LoggingSignatureEmbedder(SignatureEmbedder):
    def embed(self, document_path: str, signer: User, *, stage: str) -> None:
        logger.info(
            "Signature stamp requested: stage=%s signer=%s path=%s signature=%s",
            stage,
            signer.username,
            document_path,
            signer.signature_path or "(none)",
        )


def document_generator_from_config(config: dict) -> DocumentGenerator:
    root = (config.get("QUALITY_DOC_ROOT") or "quality-docs").strip()
    return DeferredDocumentGenerator(root=root)


def signature_embedder_from_config(config: dict) -> SignatureEmbedder:
    return LoggingSignatureEmbedder()
