"""
Page catalog: find page images and put them in reading order.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, List, Optional

from natsort import natsort_keygen, ns


IMAGE_SUFFIXES = {".jpg", ".jpeg", ".png", ".webp"}
CONTENT = "content"
BLANK = "blank"

# Digit runs compare as integers, so "2.jpg" sorts before "10.jpg".
_natural_key = natsort_keygen(alg=ns.PATH | ns.IGNORECASE)


@dataclass
class Page:
    """One source page image and its classification."""

    path: Path
    order_key: Any = field(repr=False)
    index: int = 0
    content_flag: Optional[str] = None

    def mark(self, flag: str) -> None:
        """Assign the content flag. It can only be set once."""

        if flag not in {CONTENT, BLANK}:
            raise ValueError(f"Unknown content flag: {flag}")
        if self.content_flag is not None:
            raise ValueError(f"Page {self.path} is already classified as {self.content_flag}.")
        self.content_flag = flag

    @property
    def is_content(self) -> bool:
        return self.content_flag == CONTENT

    @property
    def name(self) -> str:
        return self.path.name


def _is_page_file(path: Path, root: Path) -> bool:
    if not path.is_file() or path.suffix.lower() not in IMAGE_SUFFIXES:
        return False
    parts = path.relative_to(root).parts
    # Hidden files, AppleDouble "._" shadows and __MACOSX folders.
    return not any(part.startswith(".") or part == "__MACOSX" for part in parts)


def collect_page_files(in_dir: Path) -> List[Path]:
    """Return every page image under in_dir, flat or nested, unordered."""

    return [path for path in in_dir.rglob("*") if _is_page_file(path, in_dir)]


def catalog_directory(in_dir: Path) -> List[Page]:
    """Build the reading-order catalog for a page directory."""

    return build_catalog(collect_page_files(in_dir), root=in_dir)


def build_catalog(image_paths: Iterable[Path], root: Optional[Path] = None) -> List[Page]:
    """
    Order page files by natural filename order.

    With ``root`` the key is the path relative to it, so pages in nested
    chapter folders stay grouped by folder. Files outside the extension
    allow-list are dropped. No files means an empty catalog.
    """

    pages: List[Page] = []
    for path in set(Path(p) for p in image_paths):
        if path.suffix.lower() not in IMAGE_SUFFIXES:
            continue
        relative = path.relative_to(root) if root is not None else Path(path.name)
        pages.append(Page(path=path, order_key=_natural_key(relative.as_posix())))

    # Path string breaks ties between names that natsort considers equal.
    pages.sort(key=lambda page: (page.order_key, str(page.path)))
    for index, page in enumerate(pages):
        page.index = index
    return pages
