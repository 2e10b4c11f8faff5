"""Local blob stores for uploaded files."""
from __future__ import annotations

import os
import time
from typing import Optional, Tuple

from flask import current_app, url_for
from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

from services.errors import PersistenceError, ValidationError


def file_extension(filename: str) -> str:
    return filename.rsplit('.', 1)[1].lower() if '.' in filename else ''


class LocalStorage:
    """Saves uploads under a configured folder with timestamped names.

    Subclasses name the config keys for the folder and the allowed
    extensions, and the endpoint that serves stored files back.
    """

    folder_key = ''
    extensions_key = ''
    endpoint = ''
    kind = 'file'

    @property
    def root(self) -> str:
        return current_app.config[self.folder_key]

    def allowed(self, filename: str) -> bool:
        return file_extension(filename) in current_app.config[self.extensions_key]

    def _store(self, file: FileStorage, subdir: Optional[str] = None) -> Tuple[str, str]:
        if not file or not file.filename:
            raise ValidationError('No file provided')
        original = secure_filename(file.filename)
        if not original or not self.allowed(original):
            raise ValidationError('Unsupported file type')
        filename = f"{int(time.time() * 1000)}.{file_extension(original)}"
        path = f"{subdir}/{filename}" if subdir else filename
        target_dir = os.path.join(self.root, subdir) if subdir else self.root
        try:
            os.makedirs(target_dir, exist_ok=True)
            file.save(os.path.join(target_dir, filename))
        except OSError as exc:
            current_app.logger.exception('Storing %s %s failed', self.kind, path)
            raise PersistenceError(f'Failed to store {self.kind}') from exc
        current_app.logger.info('Stored %s %s', self.kind, path)
        return path, self.public_url(path)

    def public_url(self, path: str) -> str:
        return url_for(self.endpoint, path=path, _external=True)

    def remove(self, path: str) -> None:
        try:
            os.remove(os.path.join(self.root, path))
        except OSError:
            current_app.logger.warning('Could not remove orphaned %s %s', self.kind, path)


class CertificateStorage(LocalStorage):
    """Stores files under ``CERTIFICATE_UPLOAD_FOLDER/<user_id>/``."""

    folder_key = 'CERTIFICATE_UPLOAD_FOLDER'
    extensions_key = 'ALLOWED_CERTIFICATE_EXTENSIONS'
    endpoint = 'certificate_file'
    kind = 'certificate file'

    def upload(self, user_id: int, file: FileStorage) -> Tuple[str, str]:
        return self._store(file, str(user_id))


class BicycleImageStorage(LocalStorage):
    folder_key = 'BICYCLE_IMAGE_FOLDER'
    extensions_key = 'ALLOWED_IMAGE_EXTENSIONS'
    endpoint = 'bicycle_image_file'
    kind = 'bicycle image'

    def upload(self, file: FileStorage) -> Tuple[str, str]:
        return self._store(file)
