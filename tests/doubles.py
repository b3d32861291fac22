"""Test doubles for the gateway, blob store and downloader."""
from typing import Any, Optional

from channels.base import GatewayStatus, MessagingGateway
from core.errors import GatewayError, StorageError
from models.schemas import MessageKind, SequenceDefinition, SequenceStep
from providers.blob_store import BlobStore


class RecordingGateway(MessagingGateway):
    """Connected gateway that records every send instead of talking to WhatsApp."""

    name = "recording"

    def __init__(self, rich_media: bool = False, fail_phones: Optional[set[str]] = None):
        super().__init__(send_timeout=1.0, audio_timeout=1.0, max_attempts=1, backoff_seconds=0)
        self._status = GatewayStatus.CONNECTED
        self._rich = rich_media
        self.fail_phones = fail_phones or set()
        self.sent: list[tuple[str, str, Any]] = []

    @property
    def supports_rich_media(self) -> bool:
        return self._rich

    async def connect(self) -> GatewayStatus:
        self._status = GatewayStatus.CONNECTED
        return self._status

    async def disconnect(self) -> None:
        self._status = GatewayStatus.DISCONNECTED

    def _check(self, phone: str):
        if phone in self.fail_phones:
            raise GatewayError(f"bridge rejected {phone}")

    async def _do_send_text(self, phone: str, text: str, timeout: float) -> None:
        self._check(phone)
        self.sent.append(("text", phone, text))

    async def _do_send_audio(self, phone: str, url: str, timeout: float) -> None:
        self._check(phone)
        self.sent.append(("audio", phone, url))

    async def _do_send_rich_media(self, phone: str, kind: MessageKind, url: str, caption: str, timeout: float) -> None:
        self._check(phone)
        self.sent.append((kind.value, phone, url))

    def texts_to(self, phone: str) -> list[str]:
        return [body for kind, to, body in self.sent if kind == "text" and to == phone]


class FakeBlobStore(BlobStore):
    def __init__(self):
        self.uploads: list[tuple[str, str, str]] = []

    async def upload_file(self, local_path: str, dest: str, content_type: str) -> str:
        self.uploads.append((local_path, dest, content_type))
        return f"https://blob.test/{dest}"


class FakeDownloader:
    """Writes a few placeholder bytes to the destination and remembers the URL."""

    def __init__(self, fail_urls: Optional[set[str]] = None):
        self.urls: list[str] = []
        self.fail_urls = fail_urls or set()

    async def __call__(self, url: str, dest_path: str) -> str:
        self.urls.append(url)
        if url in self.fail_urls:
            raise StorageError(f"Download of {url} failed")
        with open(dest_path, "wb") as f:
            f.write(b"ID3")
        return dest_path


def make_definition(sequence_id: str, delays: list[float], kind: str = "text") -> SequenceDefinition:
    return SequenceDefinition(
        id=sequence_id,
        trigger=sequence_id,
        steps=[
            SequenceStep(kind=kind, content=f"{sequence_id} step {i} for {{{{name}}}}", delay_minutes=d)
            for i, d in enumerate(delays)
        ],
    )
