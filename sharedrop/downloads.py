import logging
import os
from pathlib import Path
from typing import Union

logger = logging.getLogger(__name__)


def get_unique_file_path(file_path: Union[str, os.PathLike]) -> Path:
    """Get a unique file path if file already exists"""
    file_path = Path(file_path)
    if not file_path.exists():
        return file_path

    counter = 1
    candidate = file_path
    while candidate.exists():
        candidate = file_path.with_name(f"{file_path.stem} ({counter}){file_path.suffix}")
        counter += 1
    return candidate


def save_received_file(download_dir: Union[str, os.PathLike], name: str, data: bytes) -> Path:
    """Write received bytes into ``download_dir`` without overwriting anything"""
    download_dir = Path(download_dir)
    download_dir.mkdir(parents=True, exist_ok=True)

    # Never trust a remote name with directory parts
    safe_name = Path(name.replace("\\", "/")).name
    if safe_name in ("", ".", ".."):
        safe_name = "received.bin"
    path = get_unique_file_path(download_dir / safe_name)
    path.write_bytes(data)
    logger.info(f"💾 Saved {safe_name} to {path}")
    return path
