"""File content processing collaborator.

The worker only depends on the `FileProcessor` protocol and the
`ProcessedFile` shape. `TextFileProcessor` covers attachments that already
carry text; binary extraction (PDF, DOCX, OCR) belongs to other processors.
"""

from __future__ import annotations

import math
import re
from typing import Protocol

from agentcue.models import ProcessedFile, TaskFile

MAX_FILE_SIZE = 50 * 1024 * 1024
CHUNK_TOKENS = 3000
CHUNK_OVERLAP_TOKENS = 200
WORDS_PER_MINUTE = 200

TEXT_MIME_TYPES = frozenset({
    "text/plain",
    "text/markdown",
    "text/html",
    "text/css",
    "text/javascript",
    "application/javascript",
    "application/json",
    "text/x-python",
    "application/x-python",
    "text/x-java",
    "text/x-c",
    "text/x-c++",
})

_SENTENCE = re.compile(r"[^.!?]+[.!?]+")


class FileProcessor(Protocol):
    """Turns one attachment into a `ProcessedFile`.

    Implementations may raise, or return a `ProcessedFile` with `error` set;
    the worker treats both as a skipped file.
    """

    async def process(self, file: TaskFile) -> ProcessedFile: ...


def estimate_tokens(text: str) -> int:
    """Rough token estimate: one token per four characters."""
    return math.ceil(len(text) / 4)


def count_words(text: str) -> int:
    return len(text.split())


def split_sentences(text: str) -> list[str]:
    sentences = _SENTENCE.findall(text) or [text]
    return [s.strip() for s in sentences if s.strip()]


def chunk_text(
    text: str,
    max_tokens: int = CHUNK_TOKENS,
    overlap_tokens: int = CHUNK_OVERLAP_TOKENS,
) -> list[str]:
    """Split text on sentence boundaries into chunks of about `max_tokens`.

    Each chunk after the first starts with the tail of the previous one.
    """
    if not text or estimate_tokens(text) <= max_tokens:
        return [text]

    chunks: list[str] = []
    current = ""
    current_tokens = 0
    for sentence in split_sentences(text):
        size = estimate_tokens(sentence)
        if current and current_tokens + size > max_tokens:
            chunks.append(current.strip())
            overlap = current[-overlap_tokens * 4:] if overlap_tokens > 0 else ""
            current = f"{overlap} {sentence}".strip()
            current_tokens = estimate_tokens(current)
        else:
            current = f"{current} {sentence}" if current else sentence
            current_tokens += size
    if current:
        chunks.append(current.strip())
    return chunks


class TextFileProcessor:
    """Processor for attachments whose text is supplied inline."""

    def __init__(
        self,
        *,
        max_file_size: int = MAX_FILE_SIZE,
        chunk_tokens: int = CHUNK_TOKENS,
        overlap_tokens: int = CHUNK_OVERLAP_TOKENS,
    ) -> None:
        self.max_file_size = max_file_size
        self.chunk_tokens = chunk_tokens
        self.overlap_tokens = overlap_tokens

    async def process(self, file: TaskFile) -> ProcessedFile:
        if file.size > self.max_file_size:
            raise ValueError(
                f"{file.file_name} is {file.size} bytes, over the {self.max_file_size} byte limit"
            )
        if file.mime_type not in TEXT_MIME_TYPES and not file.mime_type.startswith("text/"):
            raise ValueError(f"Unsupported file type: {file.mime_type}")
        if file.content is None:
            raise ValueError(f"No content available for {file.file_name}")

        content = file.content.strip()
        words = count_words(content)
        chunks = None
        if estimate_tokens(content) > self.chunk_tokens:
            chunks = chunk_text(content, self.chunk_tokens, self.overlap_tokens)

        metadata = {
            "mimeType": file.mime_type,
            "characterCount": len(content),
            "wordCount": words,
            "readingTime": math.ceil(words / WORDS_PER_MINUTE),
        }
        if chunks:
            metadata["chunkCount"] = len(chunks)

        return ProcessedFile(
            file_name=file.file_name,
            content=content,
            metadata=metadata,
            word_count=words,
            chunks=chunks,
        )
