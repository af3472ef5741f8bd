"""
Configuration document storage.

The document lives as pretty-printed JSON:

    {
      "mcpServers": { "server-id": { "transport": "stdio", "command": "npx", ... } },
      "disabled":   { "other-id":  { "transport": "http", "baseUrl": "https://..." } }
    }

The store only handles raw entries; validation happens in ConfigValidator.
Entries written through the store use the canonical `transport` / `baseUrl`
keys; the `type` / `url` aliases are accepted on read.
"""

import contextlib
import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from toolhost_mcp.errors import ConfigValidationError, ConfigurationError, UnknownServerError
from toolhost_mcp.validation import duplicate_ids, normalize_document

logger = logging.getLogger(__name__)

ACTIVE = "mcpServers"
DISABLED = "disabled"


def empty_document() -> Dict[str, Any]:
    return {ACTIVE: {}, DISABLED: {}}


def canonical_entry(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of an entry with `type` -> `transport` and `url` -> `baseUrl`."""
    entry = copy.deepcopy(raw)
    if "type" in entry:
        alias = entry.pop("type")
        entry.setdefault("transport", alias)
    if "url" in entry:
        alias = entry.pop("url")
        entry.setdefault("baseUrl", alias)
    return entry


class ConfigStore:
    """Load, edit and save the configuration document."""

    def __init__(self, path: Path):
        self.path = Path(path).expanduser()
        self._document: Optional[Dict[str, Any]] = None

    @property
    def document(self) -> Dict[str, Any]:
        if self._document is None:
            self.load()
        return self._document

    def sections(self) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        doc = self.document
        return doc[ACTIVE], doc[DISABLED]

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> Dict[str, Any]:
        """
        Read the document from disk.

        A missing file is created empty. A file with the wrong shape loads as
        an empty document (the file is left untouched).

        Raises:
            ConfigurationError: If the file cannot be read or is not valid JSON
        """
        if not self.path.exists():
            logger.info(f"No configuration at {self.path}, creating an empty one")
            self._document = empty_document()
            self.save()
            return self._document

        try:
            with open(self.path, "r") as f:
                raw = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Failed to parse configuration at {self.path}: {e}")
        except OSError as e:
            raise ConfigurationError(f"Failed to read configuration at {self.path}: {e}")

        try:
            active, disabled = normalize_document(raw)
        except ConfigValidationError as e:
            logger.warning(f"Ignoring malformed configuration at {self.path}: {e}")
            self._document = empty_document()
            return self._document

        self._document = {ACTIVE: active, DISABLED: disabled}
        logger.info(f"Loaded configuration from {self.path} ({len(active)} active, {len(disabled)} disabled)")
        return self._document

    def save(self, document: Optional[Dict[str, Any]] = None):
        """
        Write the document (or replace it with `document` first).

        Raises:
            ConfigValidationError: If the document shape is wrong or ids collide
            ConfigurationError: If the file cannot be written
        """
        if document is not None:
            doc = self._checked(document)
        else:
            doc = self._document if self._document is not None else empty_document()
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_name(self.path.name + ".tmp")
            with open(tmp_path, "w") as f:
                json.dump(doc, f, indent=2)
                f.write("\n")
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise ConfigurationError(f"Failed to write configuration to {self.path}: {e}")
        self._document = doc
        logger.info(f"Saved configuration to {self.path}")

    @contextlib.contextmanager
    def transaction(self):
        """Edits made inside the block are undone in memory if the block raises."""
        snapshot = copy.deepcopy(self._document)
        try:
            yield self
        except Exception:
            self._document = snapshot
            raise

    def _checked(self, document: Any) -> Dict[str, Any]:
        active, disabled = normalize_document(document)
        dupes = duplicate_ids(active, disabled)
        if dupes:
            raise ConfigValidationError(
                [f"Server id '{server_id}' appears in both mcpServers and disabled" for server_id in dupes]
            )
        return {ACTIVE: dict(active), DISABLED: dict(disabled)}

    def migrate(self) -> bool:
        """Ensure both sections exist and entries use canonical keys. Returns True if anything changed."""
        before = json.dumps(self._document, sort_keys=True) if self._document is not None else None
        active, disabled = self.sections()
        migrated = {
            ACTIVE: {k: canonical_entry(v) if isinstance(v, dict) else v for k, v in active.items()},
            DISABLED: {k: canonical_entry(v) if isinstance(v, dict) else v for k, v in disabled.items()},
        }
        self._document = migrated
        return json.dumps(migrated, sort_keys=True) != before

    # ------------------------------------------------------------------
    # Entry operations
    # ------------------------------------------------------------------

    def find(self, server_id: str) -> Optional[Tuple[str, Dict[str, Any]]]:
        """(section, entry) for a server id, or None."""
        for section in (ACTIVE, DISABLED):
            entry = self.document[section].get(server_id)
            if entry is not None:
                return section, entry
        return None

    def get_server(self, server_id: str) -> Dict[str, Any]:
        found = self.find(server_id)
        if found is None:
            raise UnknownServerError(f"Server '{server_id}' is not configured", server_id)
        section, entry = found
        return {"id": server_id, "enabled": section == ACTIVE, **copy.deepcopy(entry)}

    def list_servers(self) -> List[Dict[str, Any]]:
        servers = []
        for section in (ACTIVE, DISABLED):
            for server_id, entry in self.document[section].items():
                servers.append({"id": server_id, "enabled": section == ACTIVE, **copy.deepcopy(entry)})
        return servers

    def add_server(self, server_id: str, entry: Dict[str, Any], enabled: bool = True):
        if self.find(server_id) is not None:
            raise ConfigValidationError([f"Server '{server_id}' already exists"], server_id)
        self.document[ACTIVE if enabled else DISABLED][server_id] = canonical_entry(entry)

    def preview_update(self, server_id: str, updates: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        """(section, merged entry) that update_server would write, without writing it."""
        found = self.find(server_id)
        if found is None:
            raise UnknownServerError(f"Server '{server_id}' is not configured", server_id)
        section, entry = found
        merged = canonical_entry(entry)
        for key, value in canonical_entry(updates).items():
            if value is None:
                merged.pop(key, None)
            else:
                merged[key] = value
        return section, merged

    def update_server(self, server_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        """Merge `updates` into an existing entry (a None value deletes a key)."""
        section, merged = self.preview_update(server_id, updates)
        self.document[section][server_id] = merged
        return merged

    def remove_server(self, server_id: str) -> bool:
        removed = False
        for section in (ACTIVE, DISABLED):
            if self.document[section].pop(server_id, None) is not None:
                removed = True
        return removed

    def enable_server(self, server_id: str) -> bool:
        """Move an entry from disabled to active. Returns False if already active."""
        return self._move(server_id, DISABLED, ACTIVE)

    def disable_server(self, server_id: str) -> bool:
        """Move an entry from active to disabled. Returns False if already disabled."""
        return self._move(server_id, ACTIVE, DISABLED)

    def _move(self, server_id: str, source: str, target: str) -> bool:
        found = self.find(server_id)
        if found is None:
            raise UnknownServerError(f"Server '{server_id}' is not configured", server_id)
        if found[0] == target:
            return False
        self.document[target][server_id] = self.document[source].pop(server_id)
        logger.info(f"Moved '{server_id}' from {source} to {target}")
        return True

    def import_configuration(self, document: Any, overwrite: bool = False) -> Dict[str, List[str]]:
        """Merge another document into this one."""
        incoming = self._checked(document)
        imported, skipped = [], []
        for section in (ACTIVE, DISABLED):
            for server_id, entry in incoming[section].items():
                if self.find(server_id) is not None:
                    if not overwrite:
                        skipped.append(server_id)
                        continue
                    self.remove_server(server_id)
                self.document[section][server_id] = canonical_entry(entry) if isinstance(entry, dict) else entry
                imported.append(server_id)
        return {"imported": imported, "skipped": skipped}

    def export_configuration(self) -> Dict[str, Any]:
        return copy.deepcopy(self.document)
