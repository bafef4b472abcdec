import os
from typing import Optional
from taxkb.config.settings import settings
from taxkb.storage.base import FileStore

class LocalFileStore(FileStore):
    """
    Implements FileStore using the local disk.
    Stores the original uploaded PDFs; the returned path is the document's file location.
    """

    def __init__(self, uploads_path: Optional[str] = None):
        self.uploads_path = uploads_path or settings.storage.uploads_path
        os.makedirs(self.uploads_path, exist_ok=True)

    def _path(self, document_id: str) -> str:
        return os.path.abspath(os.path.join(self.uploads_path, f"{document_id}.pdf"))

    def save_pdf(self, document_id: str, file_bytes: bytes) -> str:
        path = self._path(document_id)
        with open(path, "wb") as f:
            f.write(file_bytes)
        return path

    def delete_document(self, document_id: str) -> None:
        path = self._path(document_id)
        if os.path.exists(path):
            os.remove(path)
