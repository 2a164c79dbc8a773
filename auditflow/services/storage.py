"""
File storage collaborator.

The workflow engine only keeps storage references; bytes go through a
``FileStorage``. ``LocalFileStorage`` writes below ``UPLOAD_FOLDER``.

Usage:
    ref = get_storage().save(project_id, task_id, upload.filename, upload.stream)
"""

import logging
import os
import shutil
import uuid

from flask import current_app
from werkzeug.utils import secure_filename

from auditflow.core.exceptions import ValidationError

logger = logging.getLogger(__name__)


class FileStorage:
    """Storage backend interface."""

    def save(self, project_id: int, task_id: int, filename: str, stream) -> str:
        raise NotImplementedError


class LocalFileStorage(FileStorage):
    """Stores files as ``<root>/<project_id>/<task_id>/<uuid>_<name>``."""

    def __init__(self, root: str):
        self.root = root

    def save(self, project_id: int, task_id: int, filename: str, stream) -> str:
        safe_name = secure_filename(filename or "")
        if not safe_name:
            raise ValidationError("A file name is required", details={"file": "missing name"})
        rel_dir = os.path.join(str(project_id), str(task_id))
        os.makedirs(os.path.join(self.root, rel_dir), exist_ok=True)
        reference = os.path.join(rel_dir, f"{uuid.uuid4().hex[:12]}_{safe_name}")
        with open(os.path.join(self.root, reference), "wb") as fh:
            shutil.copyfileobj(stream, fh)
        logger.debug("Stored %s", reference, extra={"project_id": project_id, "task_id": task_id})
        return reference.replace(os.sep, "/")


def get_storage() -> FileStorage:
    """Storage configured on the current app (``LocalFileStorage`` by default)."""
    storage = current_app.extensions.get("auditflow_storage")
    if storage is None:
        storage = LocalFileStorage(current_app.config["UPLOAD_FOLDER"])
        current_app.extensions["auditflow_storage"] = storage
    return storage
