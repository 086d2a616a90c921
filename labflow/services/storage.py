# labflow/services/storage.py

"""
확정된 성적서 PDF를 저장하는 파일 저장소 협력자입니다.
기본 구현은 aiofiles로 로컬 디렉토리에 비동기 기록합니다.
"""

import logging
import os
from pathlib import Path
from typing import Optional

import aiofiles
import aiofiles.os

from labflow.core.config import settings
from labflow.core.exceptions import StorageFailed

logger = logging.getLogger(__name__)


class LocalFileStorage:
    def __init__(self, root_dir: Optional[str] = None):
        self.root_dir = Path(root_dir or settings.REPORT_STORAGE_DIR)

    def _resolve(self, path: str) -> Path:
        target = (self.root_dir / path).resolve()
        # 저장소 루트 밖으로 벗어나는 경로는 허용하지 않습니다.
        if self.root_dir.resolve() not in target.parents:
            raise StorageFailed(f"Invalid storage path: {path}")
        return target

    async def store(self, path: str, data: bytes) -> str:
        """
        파일을 기록하고 저장소 상대 경로를 반환합니다.
        """
        target = self._resolve(path)
        try:
            os.makedirs(target.parent, exist_ok=True)
            async with aiofiles.open(target, "wb") as buffer:
                await buffer.write(data)
        except OSError as e:
            raise StorageFailed(f"Failed to store {path}: {e}") from e
        logger.info("파일 저장 완료: %s (%d bytes)", target, len(data))
        return path

    async def exists(self, path: str) -> bool:
        return await aiofiles.os.path.exists(self._resolve(path))

    async def delete(self, path: str) -> None:
        target = self._resolve(path)
        try:
            if await aiofiles.os.path.exists(target):
                await aiofiles.os.remove(target)
        except OSError as e:
            raise StorageFailed(f"Failed to delete {path}: {e}") from e


def get_storage() -> LocalFileStorage:
    return LocalFileStorage()
