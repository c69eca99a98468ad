# referralweb/attachment_store.py
from __future__ import annotations

import logging
import os
import re
import secrets
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple
from urllib.parse import quote

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from referralweb.errors import AttachmentUploadError
from referralweb.models import Document

logger = logging.getLogger("referralweb.attachments")

PROJECT_ROOT = os.path.dirname(os.path.dirname(__file__))
DATA_DIR = os.getenv("REFERRAL_DATA_DIR", os.path.join(PROJECT_ROOT, "data"))
UPLOAD_DIR = os.getenv("REFERRAL_UPLOAD_DIR", os.path.join(DATA_DIR, "uploads"))
PUBLIC_BASE_URL = os.getenv("REFERRAL_PUBLIC_BASE_URL", "").strip()
BLOB_BACKEND = os.getenv("REFERRAL_BLOB_BACKEND", "local").strip().lower()
UPLOAD_WORKERS = int(os.getenv("REFERRAL_UPLOAD_WORKERS", "4"))

KEY_PREFIX = "referrals"

# -------------------------
# Content-type allow-list
# -------------------------
PDF_MIME = "application/pdf"
ALLOWED_MIMES = {PDF_MIME, "image/jpeg", "image/png"}

_PDF_MAGIC = b"%PDF-"
_PNG_MAGIC = b"\x89PNG\r\n\x1a\n"
_JPEG_MAGIC_PREFIX = b"\xff\xd8\xff"  # SOI + marker


@dataclass
class IncomingFile:
    """One uploaded file part, as received from the form."""
    filename: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data or b"")


# -------------------------
# Internal helpers
# -------------------------
def sanitize_filename(filename: str) -> str:
    """
    Prevent path traversal and strip control chars.
    Keeps a user-friendly base name.
    """
    fn = (filename or "").strip().replace("\\", "/")
    fn = os.path.basename(fn)
    fn = fn.replace("\x00", "")
    fn = re.sub(r"[\r\n\t]+", " ", fn).strip()
    fn = re.sub(r"\s{2,}", " ", fn).strip()
    if not fn or fn in {".", ".."}:
        fn = "upload"
    if len(fn) > 180:
        root, ext = os.path.splitext(fn)
        fn = root[:160] + ext[:20]
    return fn


def sniff_mime(data: bytes) -> Optional[str]:
    """
    MIME sniffing by signature, so a spoofed content_type cannot slip through.
    Returns one of the allow-listed mimes or None if unknown.
    """
    b = (data or b"")[:16]
    if b.startswith(_PDF_MAGIC):
        return PDF_MIME
    if b.startswith(_PNG_MAGIC):
        return "image/png"
    if b.startswith(_JPEG_MAGIC_PREFIX):
        return "image/jpeg"
    return None


def resolve_mime(f: IncomingFile) -> str:
    # Sniffed type wins over the declared one.
    return sniff_mime(f.data) or (f.content_type or "").split(";")[0].strip().lower()


def build_blob_key(filename: str) -> str:
    """referrals/<16 hex>/<sanitized name>: unrelated submitters never collide."""
    return f"{KEY_PREFIX}/{secrets.token_hex(8)}/{sanitize_filename(filename)}"


# =========================
# Blob stores
# =========================

class BlobStore(ABC):
    @abstractmethod
    def put(self, key: str, data: bytes, content_type: str) -> str:
        """Persist bytes under key and return a publicly retrievable URL."""

    @abstractmethod
    def delete(self, key: str) -> None:
        ...


class LocalBlobStore(BlobStore):
    """
    Files under a local directory that main.py serves at /uploads.
    """

    def __init__(self, root_dir: str = UPLOAD_DIR, public_base_url: str = PUBLIC_BASE_URL):
        self.root_dir = os.path.abspath(root_dir)
        self.public_base_url = (public_base_url or "").rstrip("/")
        os.makedirs(self.root_dir, exist_ok=True)

    def _path_for(self, key: str) -> str:
        path = os.path.abspath(os.path.join(self.root_dir, key))
        if not path.startswith(self.root_dir + os.sep):
            raise ValueError(f"Blob key escapes upload root: {key}")
        return path

    def put(self, key: str, data: bytes, content_type: str) -> str:
        path = self._path_for(key)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        tmp = f"{path}.tmp"
        with open(tmp, "wb") as f:
            f.write(data)
        os.replace(tmp, path)
        logger.info("Stored upload %s (%s bytes, %s)", key, len(data), content_type)
        return f"{self.public_base_url}/uploads/{quote(key)}"

    def delete(self, key: str) -> None:
        path = self._path_for(key)
        if os.path.exists(path):
            os.remove(path)

    def read(self, key: str) -> bytes:
        with open(self._path_for(key), "rb") as f:
            return f.read()


class S3BlobStore(BlobStore):
    def __init__(
        self,
        bucket_name: Optional[str] = None,
        region: Optional[str] = None,
        public_base_url: str = PUBLIC_BASE_URL,
        client=None,
    ):
        self.bucket_name = bucket_name or os.environ.get("S3_BUCKET_NAME")
        self.region = region or os.environ.get("AWS_REGION", "us-east-1")
        self.public_base_url = (public_base_url or "").rstrip("/")
        if not self.bucket_name:
            raise RuntimeError("S3_BUCKET_NAME not configured")

        self.s3_client = client or boto3.client(
            "s3",
            aws_access_key_id=os.environ.get("AWS_ACCESS_KEY_ID"),
            aws_secret_access_key=os.environ.get("AWS_SECRET_ACCESS_KEY"),
            region_name=self.region,
        )

    def put(self, key: str, data: bytes, content_type: str) -> str:
        extra_args = {}
        if content_type:
            extra_args["ContentType"] = content_type
        try:
            self.s3_client.put_object(
                Body=data,
                Bucket=self.bucket_name,
                Key=key,
                **extra_args,
            )
        except (ClientError, BotoCoreError) as e:
            logger.error("Error uploading file to S3: %s", e)
            raise
        logger.info("Uploaded file to s3://%s/%s", self.bucket_name, key)
        if self.public_base_url:
            return f"{self.public_base_url}/{quote(key)}"
        return f"https://{self.bucket_name}.s3.{self.region}.amazonaws.com/{quote(key)}"

    def delete(self, key: str) -> None:
        self.s3_client.delete_object(Bucket=self.bucket_name, Key=key)


def blob_store_from_env() -> BlobStore:
    if BLOB_BACKEND == "s3":
        return S3BlobStore()
    if BLOB_BACKEND != "local":
        raise RuntimeError(f"Unknown REFERRAL_BLOB_BACKEND: {BLOB_BACKEND}")
    if not PUBLIC_BASE_URL:
        logger.warning(
            "REFERRAL_PUBLIC_BASE_URL is not set; document URLs will be relative (/uploads/...) "
            "and only resolve against this server"
        )
    return LocalBlobStore(root_dir=UPLOAD_DIR, public_base_url=PUBLIC_BASE_URL)


# =========================
# Public API
# =========================

def _upload_one(f: IncomingFile, blob_store: BlobStore) -> Document:
    key = build_blob_key(f.filename)
    url = blob_store.put(key, f.data, resolve_mime(f))
    return Document(id=key, name=sanitize_filename(f.filename), url=url, size=f.size)


def discard_documents(documents: Iterable[Document], blob_store: BlobStore) -> None:
    """Best-effort removal of blobs written for a submission that was aborted."""
    for doc in documents:
        try:
            blob_store.delete(doc.id)
        except Exception as e:
            logger.warning("Could not remove orphaned upload %s: %s", doc.id, e)


def store_attachments(
    files: List[IncomingFile],
    blob_store: BlobStore,
    max_workers: int = UPLOAD_WORKERS,
) -> List[Document]:
    """
    Uploads every non-empty file and returns their metadata in input order.

    All-or-nothing: if any upload fails, blobs already written by this call are
    removed and AttachmentUploadError is raised.
    """
    items = [f for f in files if f.data]
    if not items:
        return []

    results: Dict[int, Document] = {}
    failure: Optional[Tuple[IncomingFile, Exception]] = None

    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(items)))) as pool:
        futures = {pool.submit(_upload_one, f, blob_store): idx for idx, f in enumerate(items)}
        for fut in as_completed(futures):
            idx = futures[fut]
            try:
                results[idx] = fut.result()
            except Exception as e:
                logger.error("Upload failed for %s: %s", items[idx].filename, e)
                if failure is None:
                    failure = (items[idx], e)

    if failure is not None:
        discard_documents(results.values(), blob_store)
        failed_file, exc = failure
        raise AttachmentUploadError(sanitize_filename(failed_file.filename)) from exc

    return [results[i] for i in range(len(items))]


def store_generated_pdf(name: str, data: bytes, blob_store: BlobStore) -> Document:
    f = IncomingFile(filename=name, content_type=PDF_MIME, data=data)
    try:
        return _upload_one(f, blob_store)
    except Exception as e:
        logger.error("Upload failed for generated summary %s: %s", name, e)
        raise AttachmentUploadError(name) from e
