"""History store: one immutable snapshot directory per saved generation.

Layout::

    history/2025-11-18_11-09-31_accordion/
        metadata.json
        modules/widgets/accordion-widget/index.js
        ...

The store never touches a live project, and deleting project files never
touches the store.
"""

import json
import os
import shutil
from datetime import datetime, timezone

import structlog

from config.defaults import DEFAULTS
from core.errors import HistoryNotFound
from core.state import FileEntry, HistoryRecord
from utils.folder_naming import safe_join

logger = structlog.get_logger(__name__)

METADATA_FILE = "metadata.json"


def _parse_timestamp(value):
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class HistoryStore:
    def __init__(self, root=None):
        self.root = root or DEFAULTS["history_dir"]

    def record(self, descriptor, files, project_name="Unknown Project", full_design=False,
               description=None, now=None) -> HistoryRecord:
        """Snapshot a generation and return its record."""
        now = now or datetime.now(timezone.utc)
        base_id = f"{now.strftime('%Y-%m-%d_%H-%M-%S')}_{descriptor.name}"
        os.makedirs(self.root, exist_ok=True)

        record_id = base_id
        counter = 2
        while os.path.exists(os.path.join(self.root, record_id)):
            record_id = f"{base_id}_{counter}"
            counter += 1
        folder = os.path.join(self.root, record_id)
        os.makedirs(folder)

        for f in files:
            target = safe_join(folder, f.path)
            os.makedirs(os.path.dirname(target), exist_ok=True)
            with open(target, "w", encoding="utf-8", newline="") as fp:
                fp.write(f.content)

        record = HistoryRecord(
            id=record_id,
            module_name=descriptor.name,
            module_type=descriptor.type,
            project_name=project_name,
            file_count=len(files),
            full_design=bool(full_design),
            description=description or None,
            timestamp=now.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
        )
        # Metadata last: a record without it is invisible to list()
        with open(os.path.join(folder, METADATA_FILE), "w", encoding="utf-8") as fp:
            json.dump(record.metadata(), fp, indent=2)

        logger.info("Saved to history", history_id=record_id, files=len(files))
        return record

    def list(self):
        """All readable records, newest first."""
        if not os.path.isdir(self.root):
            return []
        records = []
        for entry in os.listdir(self.root):
            if not os.path.isdir(os.path.join(self.root, entry)):
                continue
            try:
                record = self._load_metadata(entry)
                stamp = _parse_timestamp(record.timestamp)
            except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
                logger.debug("Skipping history entry without valid metadata",
                             history_id=entry, error=str(e))
                continue
            records.append((stamp, record))
        records.sort(key=lambda item: item[0], reverse=True)
        return [record for _, record in records]

    def retrieve(self, history_id):
        """Return (record, files) for a history id."""
        folder = self._folder(history_id)
        try:
            record = self._load_metadata(history_id)
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise HistoryNotFound(f"History item has no valid metadata: {history_id}") from e

        files = []
        for dirpath, dirnames, filenames in os.walk(folder):
            dirnames.sort()
            for filename in sorted(filenames):
                full_path = os.path.join(dirpath, filename)
                relative = os.path.relpath(full_path, folder).replace(os.sep, "/")
                if relative == METADATA_FILE:
                    continue
                with open(full_path, encoding="utf-8", newline="") as fp:
                    files.append(FileEntry(path=relative, content=fp.read()))
        return record, files

    def delete(self, history_id):
        folder = self._folder(history_id)
        shutil.rmtree(folder)
        logger.info("Deleted history item", history_id=history_id)

    def delete_all(self):
        """Remove every record directory; return how many were removed."""
        if not os.path.isdir(self.root):
            return 0
        removed = 0
        for entry in os.listdir(self.root):
            path = os.path.join(self.root, entry)
            if os.path.isdir(path):
                shutil.rmtree(path)
                removed += 1
        logger.info("Cleared history", removed=removed)
        return removed

    def _folder(self, history_id):
        if not history_id or history_id in (".", "..") or os.path.basename(history_id) != history_id:
            raise HistoryNotFound(f"History item not found: {history_id}")
        folder = os.path.join(self.root, history_id)
        if not os.path.isdir(folder):
            raise HistoryNotFound(f"History item not found: {history_id}")
        return folder

    def _load_metadata(self, history_id):
        with open(os.path.join(self.root, history_id, METADATA_FILE), encoding="utf-8") as fp:
            data = json.load(fp)
        return HistoryRecord.from_metadata(history_id, data)
