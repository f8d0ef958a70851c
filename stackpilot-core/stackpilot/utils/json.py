import json
import logging
import os
import tempfile
from typing import Union

LOG = logging.getLogger(__name__)


class FileMappedDocument(dict):
    """A dictionary that is mapped to a json document on disk.

    When the document is created, an attempt is made to load existing contents from disk. To load changes from
    concurrent writes, run load(). To save and overwrite the current document on disk, run save(). Saving writes
    to a temporary file in the same folder first and then renames it over the target, so readers either see the
    previous or the new document, never a partially written one.
    """

    path: Union[str, os.PathLike]

    def __init__(self, path: Union[str, os.PathLike], mode=0o664):
        super().__init__()
        self.path = path
        self.mode = mode
        self.load()

    def load(self):
        if not os.path.exists(self.path):
            return

        if os.path.isdir(self.path):
            raise IsADirectoryError

        with open(self.path, "r") as fd:
            self.update(json.load(fd))

    def save(self):
        if os.path.isdir(self.path):
            raise IsADirectoryError

        folder = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(folder, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(dir=folder, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w") as tmp_file:
                json.dump(self, tmp_file, sort_keys=True, indent=2)
                tmp_file.flush()
                os.fsync(tmp_file.fileno())
            os.chmod(tmp_path, self.mode)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def delete(self):
        """Removes the document from disk, if it exists."""
        if os.path.exists(self.path):
            os.remove(self.path)
        self.clear()
