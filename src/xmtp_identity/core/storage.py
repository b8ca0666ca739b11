"""
Object storage for identity data

This module provides a small byte-oriented store over either a local
directory or a cloud bucket through cloudpathlib. File-backed persistence and
the bucket network node both sit on top of it.
"""

from typing import List, Optional, Union
from pathlib import Path
import asyncio
import logging
import os
import uuid

import aiofiles
import aiofiles.os
from cloudpathlib import CloudPath

from .errors import StorageIOError

logger = logging.getLogger(__name__)

CLOUD_SCHEMES = ('s3://', 'gs://', 'az://')


class ObjectStore:
    """
    Byte store rooted at a local path or cloud URI

    Supports:
    - Local: file:///path/to/directory or /path/to/directory
    - AWS S3: s3://bucket-name/prefix
    - Google Cloud Storage: gs://bucket-name/prefix
    - Azure Blob Storage: az://container/prefix
    """

    def __init__(self, base_path: str):
        if base_path.startswith('file://'):
            self.base_path = Path(base_path[7:])
        elif base_path.startswith(CLOUD_SCHEMES):
            self.base_path = CloudPath(base_path)
        else:
            self.base_path = Path(base_path)

        self.is_cloud = not isinstance(self.base_path, Path)

    def path_for(self, name: str) -> Union[Path, CloudPath]:
        """Resolve a '/'-separated object name below the base path"""
        parts = [p for p in name.split('/') if p]
        if not parts or any(p in ('.', '..') for p in parts):
            raise ValueError(f"Invalid object name: {name!r}")
        return self.base_path.joinpath(*parts)

    async def read_bytes(self, name: str) -> Optional[bytes]:
        """Read an object, returning None when it does not exist"""
        file_path = self.path_for(name)
        try:
            if isinstance(file_path, Path):
                if not await aiofiles.os.path.exists(file_path):
                    return None
                async with aiofiles.open(file_path, 'rb') as f:
                    return await f.read()

            if not await asyncio.to_thread(file_path.exists):
                return None
            return await asyncio.to_thread(file_path.read_bytes)
        except Exception as e:
            raise StorageIOError(f"Error reading {file_path}: {e}", step="read") from e

    async def write_bytes(self, name: str, data: bytes) -> None:
        """
        Write an object in a single step

        Local writes go to a temporary sibling first and are renamed into
        place, so readers never observe a half-written object.
        """
        file_path = self.path_for(name)
        tmp_path = None
        try:
            if isinstance(file_path, Path):
                file_path.parent.mkdir(parents=True, exist_ok=True)
                tmp_path = file_path.with_name(f".{file_path.name}.{uuid.uuid4().hex}.tmp")
                async with aiofiles.open(tmp_path, 'wb') as f:
                    await f.write(data)
                    await f.flush()
                    await asyncio.to_thread(os.fsync, f.fileno())
                await aiofiles.os.replace(tmp_path, file_path)
            else:
                await asyncio.to_thread(file_path.write_bytes, data)
        except Exception as e:
            if tmp_path is not None:
                tmp_path.unlink(missing_ok=True)
            raise StorageIOError(f"Error writing {file_path}: {e}", step="write") from e

    async def delete(self, name: str) -> bool:
        """Delete an object; returns False when there was nothing to delete"""
        file_path = self.path_for(name)
        try:
            if isinstance(file_path, Path):
                if not await aiofiles.os.path.exists(file_path):
                    return False
                await aiofiles.os.remove(file_path)
                return True

            if not await asyncio.to_thread(file_path.exists):
                return False
            await asyncio.to_thread(file_path.unlink)
            return True
        except Exception as e:
            raise StorageIOError(f"Error deleting {file_path}: {e}", step="delete") from e

    async def exists(self, name: str) -> bool:
        file_path = self.path_for(name)
        try:
            if isinstance(file_path, Path):
                return await aiofiles.os.path.exists(file_path)
            return await asyncio.to_thread(file_path.exists)
        except Exception as e:
            raise StorageIOError(f"Error checking {file_path}: {e}", step="exists") from e

    async def list_names(self, prefix: str) -> List[str]:
        """List object names directly below a prefix"""
        dir_path = self.path_for(prefix)
        try:
            if isinstance(dir_path, Path):
                if not dir_path.is_dir():
                    return []
                return sorted(
                    f"{prefix.rstrip('/')}/{p.name}" for p in dir_path.iterdir()
                    if p.is_file() and not p.name.startswith('.')
                )

            def _list() -> List[str]:
                if not dir_path.exists():
                    return []
                return sorted(
                    f"{prefix.rstrip('/')}/{p.name}" for p in dir_path.iterdir()
                    if p.is_file()
                )
            return await asyncio.to_thread(_list)
        except Exception as e:
            raise StorageIOError(f"Error listing {dir_path}: {e}", step="list") from e

    def get_storage_info(self) -> dict:
        """Get information about the storage backend"""
        info = parse_storage_uri(str(self.base_path))
        info['is_cloud'] = self.is_cloud
        return info


def parse_storage_uri(uri: str) -> dict:
    """Parse storage URI and return information about it"""
    for scheme, kind, bucket_key in (('s3://', 's3', 'bucket'),
                                     ('gs://', 'gcs', 'bucket'),
                                     ('az://', 'azure', 'container')):
        if uri.startswith(scheme):
            parts = uri[len(scheme):].split('/', 1)
            return {
                'type': kind,
                bucket_key: parts[0],
                'prefix': parts[1] if len(parts) > 1 else '',
                'uri': uri
            }

    path = uri[7:] if uri.startswith('file://') else uri
    return {
        'type': 'local',
        'path': path,
        'uri': f'file://{path}'
    }
