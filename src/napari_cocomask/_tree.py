"""
Folder/file hierarchy built from the path-like ``file_name`` of image records.

The tree is rebuilt from scratch for every (possibly filtered) image list and
is only ever walked top-down, so nodes hold no parent reference.
"""

from typing import Any, Dict, Iterator, List, Optional, Tuple
from dataclasses import dataclass, field
import logging
import re

logger = logging.getLogger(__name__)

FOLDER = 'folder'
FILE = 'file'

_SEPARATORS = re.compile(r'[/\\]')


@dataclass
class TreeNode:
    name: str
    kind: str
    path: str
    children: Dict[str, 'TreeNode'] = field(default_factory=dict)
    image: Optional[Dict[str, Any]] = None

    @property
    def is_folder(self) -> bool:
        return self.kind == FOLDER

    @property
    def is_file(self) -> bool:
        return self.kind == FILE

    def sorted_children(self) -> List['TreeNode']:
        """Children in display order: folders first, then by name (case-sensitive)."""
        return sorted(self.children.values(),
                      key=lambda node: (node.kind != FOLDER, node.name))


def split_path(file_name: str) -> List[str]:
    return _SEPARATORS.split(file_name)


def filter_images(images: List[Dict[str, Any]], search: Optional[str]) -> List[Dict[str, Any]]:
    """
    Keep images whose ``file_name`` or decimal id contains ``search``.

    Matching is case-insensitive; an empty search keeps every image.
    """
    if not search:
        return list(images)
    needle = search.lower()
    return [img for img in images
            if needle in str(img.get('file_name', '')).lower()
            or needle in str(img.get('id', '')).lower()]


def build_file_tree(images: List[Dict[str, Any]]) -> TreeNode:
    """
    Build a folder/file tree rooted at a synthetic ``root`` folder.

    Every path segment except the last becomes a folder, the last one a file
    node referencing its image record. When two images map to the same path
    the later one wins.

    Parameters
    ----------
    images : list of dict
        Image records with a ``file_name``

    Returns
    -------
    TreeNode
        Root folder
    """
    root = TreeNode(name='root', kind=FOLDER, path='')

    for image in images:
        parts = split_path(str(image.get('file_name', '')))
        current = root
        current_path = ''
        for index, part in enumerate(parts):
            current_path = f"{current_path}/{part}" if current_path else part

            if index == len(parts) - 1:
                if part in current.children:
                    logger.debug(f"Replacing tree node at {current_path!r}")
                current.children[part] = TreeNode(
                    name=part, kind=FILE, path=current_path, image=image
                )
                continue

            node = current.children.get(part)
            if node is None or not node.is_folder:
                if node is not None:
                    logger.debug(f"Folder replaces file node at {current_path!r}")
                node = TreeNode(name=part, kind=FOLDER, path=current_path)
                current.children[part] = node
            current = node

    return root


def build_search_tree(images: List[Dict[str, Any]], search: Optional[str] = None) -> TreeNode:
    return build_file_tree(filter_images(images, search))


def iter_tree(node: TreeNode, depth: int = 0) -> Iterator[Tuple[int, TreeNode]]:
    """Walk the tree depth-first in display order, yielding ``(depth, node)``."""
    yield depth, node
    for child in node.sorted_children():
        yield from iter_tree(child, depth + 1)


def flatten_tree(root: TreeNode, include_root: bool = False) -> List[Tuple[int, TreeNode]]:
    """Display rows for a tree, with depth relative to the root's children."""
    rows = list(iter_tree(root))
    if include_root:
        return rows
    return [(depth - 1, node) for depth, node in rows[1:]]


def find_node(root: TreeNode, path: str) -> Optional[TreeNode]:
    if not path:
        return root
    current = root
    for part in split_path(path):
        current = current.children.get(part)
        if current is None:
            return None
    return current


def count_files(node: TreeNode) -> int:
    if node.is_file:
        return 1
    return sum(count_files(child) for child in node.children.values())
