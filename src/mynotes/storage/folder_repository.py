"""Repository for folders."""

import logging
from typing import Optional, Sequence

from sqlalchemy.orm import Session

from mynotes.models.db_models import DBFolder
from mynotes.models.schema import Folder
from mynotes.observability import traced
from mynotes.storage.base import Repository
from mynotes.storage.mapping import folder_to_domain, upsert_folder

logger = logging.getLogger(__name__)

DEFAULT_FOLDERS = ("Personal", "Work")


class FolderRepository(Repository[Folder]):
    """Folders by name.

    Deleting a folder keeps its notes and checklists; their ``folder_id``
    is cleared by the store and the note/checklist repositories reload.
    """

    entity_name = "folder"
    db_model = DBFolder
    watched_tables = frozenset({"folders"})

    def _to_domain(self, row: DBFolder) -> Folder:
        return folder_to_domain(row)

    def _upsert(self, session: Session, record: Folder) -> DBFolder:
        return upsert_folder(session, record)

    def _ordering(self) -> Sequence:
        return (DBFolder.name, DBFolder.id)

    @traced("create")
    def create(self, name: str) -> Folder:
        folder = Folder(name=name)
        self._write(lambda session: upsert_folder(session, folder), "create")
        return folder

    def rename(self, folder: Folder, name: str) -> Optional[Folder]:
        return self.update(folder, name=name)

    def ensure_defaults(self) -> bool:
        """Create the default folders when the store has none.

        Returns:
            True if folders were created.
        """
        if self.count() > 0:
            return False
        defaults = [Folder(name=name) for name in DEFAULT_FOLDERS]

        def work(session: Session) -> None:
            for folder in defaults:
                upsert_folder(session, folder)

        self._write(work, "ensure_defaults")
        logger.info(f"Created default folders: {', '.join(DEFAULT_FOLDERS)}")
        return True
