"""Operations on a single account's favorites tree.

All functions here work on an in-memory :class:`UserFavorites` and never
touch storage; :class:`~setka.core.account_store.AccountStore` loads the
record, applies one of these operations and writes the record back.

An image reference appears at most once across the whole tree, including
across categories.  A photo and an avatar that share the same reference are
therefore the same favorite.
"""

from __future__ import annotations

import time
from collections.abc import Iterator

from .schema import CATEGORIES, ROOT, FavoritesFolder, UserFavorites


class FolderNotFoundError(LookupError):
    """The requested folder does not exist in the category."""


def iter_images(favorites: UserFavorites) -> Iterator[str]:
    """Yield every image reference in root and folder lists of both categories."""
    for name in CATEGORIES:
        category = favorites.category(name)
        yield from category.root
        for folder in category.folders:
            yield from folder.images


def all_images(favorites: UserFavorites) -> set[str]:
    return set(iter_images(favorites))


def is_favorite(favorites: UserFavorites | None, image: str) -> bool:
    """Return True if *image* appears anywhere in the favorites tree."""
    if favorites is None:
        return False
    return any(candidate == image for candidate in iter_images(favorites))


def add(favorites: UserFavorites, image: str, category: str, folder_id: str = ROOT) -> bool:
    """Add *image* to the root list or a folder of *category*.

    Args:
        favorites: Tree to modify in place.
        image: Image reference (URL or data URL).
        category: ``"photos"`` or ``"avatars"``.
        folder_id: Target folder id, or ``"root"``.

    Returns:
        True if the image was added, False if it was already a favorite.

    Raises:
        FolderNotFoundError: If *folder_id* is not a folder of *category*.
    """
    target = favorites.category(category)

    if is_favorite(favorites, image):
        return False

    if folder_id == ROOT:
        target.root.append(image)
        return True

    folder = target.find_folder(folder_id)
    if folder is None:
        raise FolderNotFoundError(folder_id)
    folder.images.append(image)
    return True


def remove(favorites: UserFavorites, image: str) -> int:
    """Remove every occurrence of *image*; return how many were removed."""
    removed = 0
    for name in CATEGORIES:
        category = favorites.category(name)
        before = len(category.root)
        category.root = [item for item in category.root if item != image]
        removed += before - len(category.root)

        for folder in category.folders:
            before = len(folder.images)
            folder.images = [item for item in folder.images if item != image]
            removed += before - len(folder.images)
    return removed


def new_folder_id(favorites: UserFavorites, now: float | None = None) -> str:
    """Generate a ``folder_<ms>`` id that is unique within this account."""
    millis = int((time.time() if now is None else now) * 1000)
    existing = {
        folder.id for name in CATEGORIES for folder in favorites.category(name).folders
    }

    folder_id = f"folder_{millis}"
    suffix = 1
    while folder_id in existing:
        folder_id = f"folder_{millis}_{suffix}"
        suffix += 1
    return folder_id


def create_folder(favorites: UserFavorites, category: str, name: str) -> FavoritesFolder:
    target = favorites.category(category)
    folder = FavoritesFolder(id=new_folder_id(favorites), name=name)
    target.folders.append(folder)
    return folder


def rename_folder(favorites: UserFavorites, category: str, folder_id: str, name: str) -> None:
    folder = favorites.category(category).find_folder(folder_id)
    if folder is None:
        raise FolderNotFoundError(folder_id)
    folder.name = name


def delete_folder(favorites: UserFavorites, category: str, folder_id: str) -> bool:
    """Delete a folder together with its images.

    The images are dropped from favorites entirely, not moved to root.

    Returns:
        True if a folder was removed.
    """
    target = favorites.category(category)
    before = len(target.folders)
    target.folders = [folder for folder in target.folders if folder.id != folder_id]
    return len(target.folders) < before
