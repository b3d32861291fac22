"""External providers reached by the production pipeline."""
from providers.audio_generation import (
    AudioGenerationClient, GenerationCallback, parse_generation_callback,
)
from providers.blob_store import (
    AzureBlobStore, BlobStore, LocalBlobStore, create_blob_store, download_to_file,
)
from providers.text_generation import TextGenerator
from providers.transcoder import FFmpegTranscoder

__all__ = [
    "AudioGenerationClient", "GenerationCallback", "parse_generation_callback",
    "AzureBlobStore", "BlobStore", "LocalBlobStore", "create_blob_store", "download_to_file",
    "TextGenerator", "FFmpegTranscoder",
]
