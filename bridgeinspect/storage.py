"""Local file storage for uploaded models and detection images."""

from __future__ import annotations

import base64
import binascii
import io
import os
import uuid
from dataclasses import dataclass
from typing import BinaryIO, Sequence


class FileStorageError(Exception):
    """Raised when a file cannot be validated, stored or removed."""


@dataclass
class UploadedFile:
    """A file received from a client."""

    filename: str
    size: int = 0
    content: bytes = b""

    def open(self) -> BinaryIO:
        """Return a readable stream over the file's content."""
        return io.BytesIO(self.content)


def _extension(filename: str) -> str:
    name = filename.replace("\\", "/").rsplit("/", 1)[-1]
    dot = name.rfind(".")
    return name[dot:] if dot >= 0 else ""


def _format_list(items: Sequence[str]) -> str:
    return "[" + " ".join(items) + "]"


class LocalFileStorage:
    """Stores files below a base directory and returns paths relative to it."""

    def __init__(self, base_dir: str) -> None:
        self.base_dir = base_dir

    def _prepare(self, directory: str, filename: str) -> str:
        full_path = os.path.join(self.base_dir, directory, filename)
        try:
            os.makedirs(os.path.dirname(full_path), mode=0o755, exist_ok=True)
        except OSError as exc:
            raise FileStorageError(f"创建目录失败: {exc}") from exc
        return full_path

    def save_uploaded_file(self, file: UploadedFile, directory: str) -> str:
        """Store an upload under a fresh unique name keeping its extension."""
        filename = f"{uuid.uuid4()}{_extension(file.filename)}"
        full_path = self._prepare(directory, filename)
        try:
            with file.open() as src, open(full_path, "wb") as dst:
                dst.write(src.read())
        except OSError as exc:
            raise FileStorageError(f"复制文件内容失败: {exc}") from exc
        return os.path.join(directory, filename)

    def save_image(self, file: UploadedFile, directory: str) -> str:
        """Store an uploaded image."""
        return self.save_uploaded_file(file, directory)

    def save_result_image(self, base64_data: str, directory: str) -> str:
        """Decode base64 image data and store it as a new ``.jpg`` file."""
        try:
            image_data = base64.b64decode(base64_data, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise FileStorageError(f"Base64解码失败: {exc}") from exc
        filename = f"{uuid.uuid4()}.jpg"
        full_path = self._prepare(directory, filename)
        try:
            with open(full_path, "wb") as dst:
                dst.write(image_data)
        except OSError as exc:
            raise FileStorageError(f"写入文件失败: {exc}") from exc
        return os.path.join(directory, filename)

    def delete_file(self, path: str) -> bool:
        """Remove a stored file; a missing file is not an error.

        Returns True when a file was removed, False when there was none.
        """
        try:
            os.remove(os.path.join(self.base_dir, path))
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise FileStorageError(f"删除文件失败: {exc}") from exc
        return True

    def validate_file_format(
        self, file: UploadedFile, allowed_exts: Sequence[str]
    ) -> str:
        """Check the file extension (case-sensitive) and return it."""
        ext = _extension(file.filename)
        if ext in allowed_exts:
            return ext
        raise FileStorageError(
            f"不支持的文件格式: {ext}，允许的格式: {_format_list(allowed_exts)}"
        )

    def validate_file_size(self, file: UploadedFile, max_size: int) -> int:
        """Check the file is no larger than ``max_size`` bytes and return its size."""
        if file.size > max_size:
            raise FileStorageError(
                f"文件大小超过限制: {file.size / 1024 / 1024:.2f} MB "
                f"(最大 {max_size / 1024 / 1024:.2f} MB)"
            )
        return file.size