import hashlib
import os
import shutil
import tempfile
import zipfile
from pathlib import Path
from typing import Iterator, Union

from attrs import define, field
from attrs.validators import instance_of
from aws_lambda_powertools import Logger

import common.constants as constants
from common.errors import PackagingError

logger = Logger(service=constants.SERVICE_NAME, level=os.getenv("LOG_LEVEL", "INFO").upper())

# Fixed zip entry metadata so the archive bytes only depend on the source bytes.
ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)
ZIP_FILE_MODE = 0o100644


@define(slots=True, frozen=True, kw_only=True)
class Artifact:
    source_path: str = field(validator=instance_of(str))
    content_hash: str = field(validator=instance_of(str))
    archive_path: str = field(validator=instance_of(str))

    @property
    def file_name(self) -> str:
        return Path(self.archive_path).name

    @property
    def archive_dir(self) -> str:
        return str(Path(self.archive_path).parent)

    def storage_key(self, version: str) -> str:
        """Object key for this archive under an explicit version label."""
        return f"{version}/{self.file_name}"


def _source_files(source: Path) -> list[tuple[str, Path]]:
    if source.is_file():
        return [(source.name, source)]
    files = []
    for root, dirs, names in os.walk(source):
        dirs.sort()
        for name in names:
            path = Path(root) / name
            if path.is_file():
                files.append((path.relative_to(source).as_posix(), path))
    return sorted(files)


def _read_chunks(path: Path) -> Iterator[bytes]:
    with open(path, "rb") as handle:
        while chunk := handle.read(constants.ARTIFACT_CHUNK_SIZE):
            yield chunk


class ArtifactPackager:
    """Packages a pre-built directory into a content-addressed zip archive.

    The content hash covers relative paths and file bytes only, never
    timestamps, permissions or the order the filesystem lists entries in.
    """

    def __init__(self, staging_dir: Union[str, Path] = constants.ARTIFACT_STAGING_DIR) -> None:
        self.staging_dir = Path(staging_dir)

    def package(self, source_path: Union[str, Path]) -> Artifact:
        source = Path(source_path)
        if not source.exists():
            raise PackagingError(str(source_path), "path does not exist")

        try:
            files = _source_files(source)
            if not files:
                raise PackagingError(str(source_path), "no files to package")
            content_hash = self.hash_files(files)
            archive = self.staging_dir / content_hash / f"{content_hash}.zip"
            if archive.exists():
                logger.info("Reusing packaged artifact", source=str(source), content_hash=content_hash)
            else:
                self._write_archive(files, archive)
                logger.info("Packaged artifact", source=str(source), content_hash=content_hash, archive=str(archive))
        except OSError as e:
            raise PackagingError(str(source_path), str(e)) from e

        return Artifact(
            source_path=str(source),
            content_hash=content_hash,
            archive_path=str(archive),
        )

    @staticmethod
    def hash_files(files: list[tuple[str, Path]]) -> str:
        digest = hashlib.sha256()
        for relative, path in files:
            digest.update(f"{relative}\0{path.stat().st_size}\0".encode("utf-8"))
            for chunk in _read_chunks(path):
                digest.update(chunk)
        return digest.hexdigest()

    @staticmethod
    def _write_archive(files: list[tuple[str, Path]], archive: Path) -> None:
        archive.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(dir=archive.parent, suffix=".partial")
        os.close(fd)
        try:
            with zipfile.ZipFile(temp_name, "w") as bundle:
                for relative, path in files:
                    info = zipfile.ZipInfo(relative, date_time=ZIP_EPOCH)
                    info.compress_type = zipfile.ZIP_DEFLATED
                    info.external_attr = ZIP_FILE_MODE << 16
                    with open(path, "rb") as src, bundle.open(info, "w") as dst:
                        shutil.copyfileobj(src, dst, constants.ARTIFACT_CHUNK_SIZE)
            os.replace(temp_name, archive)
        finally:
            if os.path.exists(temp_name):
                os.remove(temp_name)
