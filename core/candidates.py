"""
Candidate resolution for Media Backup Engine
Works out which local media files still need to be transferred
"""
import logging
import os
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Set
import config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Candidate:
    """A local file eligible for transfer in the current run"""
    path: Path
    size: int

    @property
    def name(self) -> str:
        return self.path.name


class MediaLibrary:
    """Enumerates photos and videos under a set of local directories"""

    def __init__(self, roots: Iterable, extensions: Set[str] = None):
        self.roots = [Path(r) for r in roots]
        self.extensions = extensions or config.ALL_SUPPORTED_FORMATS

    def list_local_media_paths(self) -> List[str]:
        """Absolute paths of every supported media file, ordered by path"""
        file_paths = []
        for root in self.roots:
            if not root.is_dir():
                logger.warning(f"Media directory {root} does not exist, skipping")
                continue

            for dirpath, _, filenames in os.walk(root):
                for filename in filenames:
                    if Path(filename).suffix.lower() in self.extensions:
                        file_paths.append(str(Path(dirpath, filename).absolute()))

        file_paths.sort()
        logger.info(f"Found {len(file_paths)} media files in {len(self.roots)} directories")
        return file_paths

    def count_media_files(self) -> dict:
        """Count photos and videos"""
        counts = {'photos': 0, 'videos': 0, 'total': 0}
        for path in self.list_local_media_paths():
            ext = Path(path).suffix.lower()
            if ext in config.SUPPORTED_PHOTO_FORMATS:
                counts['photos'] += 1
            elif ext in config.SUPPORTED_VIDEO_FORMATS:
                counts['videos'] += 1
            counts['total'] += 1
        return counts


class CandidateResolver:
    """Set difference of local media against previously transferred paths"""

    def resolve(self, all_local_paths: Iterable[str],
                already_succeeded_paths: Set[str]) -> List[Candidate]:
        """
        Paths not yet transferred, in their original order.
        Files deleted or emptied since indexing are dropped here.
        """
        candidates = []
        seen = set()
        for path in all_local_paths:
            if path in already_succeeded_paths or path in seen:
                continue
            seen.add(path)

            try:
                file_stat = os.stat(path)
            except OSError as e:
                logger.info(f"Skipping {path}: {e}")
                continue

            if not stat.S_ISREG(file_stat.st_mode) or file_stat.st_size <= 0:
                logger.info(f"Skipping empty or non-regular file {path}")
                continue
            candidates.append(Candidate(path=Path(path), size=file_stat.st_size))

        logger.info(f"{len(candidates)} files to back up "
                    f"({len(already_succeeded_paths)} already backed up)")
        return candidates
