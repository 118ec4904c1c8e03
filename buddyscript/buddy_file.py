from __future__ import annotations

import fnmatch
import os
import shutil
from typing import Any, Dict, List

from buddyscript.buddy_datatypes import ScriptError
from buddyscript.buddy_printer import stringify
from buddyscript.buddy_runtime import BuiltinLibrary, iso_from_ms
from buddyscript.buddy_serialize import deserialize, detect_format, serialize


def resolve_path(path: str, workdir: str) -> str:
    if os.path.isabs(path):
        return path
    return os.path.normpath(os.path.join(workdir, path))


class FileLib(BuiltinLibrary):
    """File-system builtins. Relative paths resolve against the configured workdir."""

    def path(self, p) -> str:
        return resolve_path(stringify(p), self.config.workdir)

    def dry_run(self, message: str) -> bool:
        if self.config.dry_run:
            self.emit(f"[DRY RUN] {message}")
            return True
        return False

    @staticmethod
    def encode_content(path: str, content: Any) -> str:
        """Text to write for ``content``: strings as is, other values serialised by extension."""
        if isinstance(content, str):
            return content
        fmt = detect_format(path) or "json"
        text = serialize(content, fmt=fmt)
        return text if text.endswith("\n") else text + "\n"

    # --- Reading ---
    def _read_file(self, path):
        with open(self.path(path), "r", encoding="utf-8") as f:
            return f.read()

    def read_data(self, path):
        """Parses a ``.json`` / ``.yaml`` file; other files come back as text."""
        full = self.path(path)
        with open(full, "r", encoding="utf-8") as f:
            text = f.read()
        return deserialize(text, path=full)

    def _file_exists(self, path):
        return os.path.exists(self.path(path))

    def _is_file(self, path):
        return os.path.isfile(self.path(path))

    def _is_dir(self, path):
        return os.path.isdir(self.path(path))

    def _list_dir(self, path="."):
        return sorted(os.listdir(self.path(path)))

    def _glob(self, pattern):
        pattern = stringify(pattern)
        directory = os.path.dirname(pattern) or "."
        name_pattern = os.path.basename(pattern)
        full_dir = self.path(directory)
        if not os.path.isdir(full_dir):
            return []
        return [os.path.normpath(os.path.join(directory, name)) for name in sorted(os.listdir(full_dir))
                if fnmatch.fnmatchcase(name, name_pattern)]

    def _file_size(self, path):
        return os.stat(self.path(path)).st_size

    def _file_mtime(self, path):
        return os.stat(self.path(path)).st_mtime * 1000

    def stat(self, path) -> Dict[str, Any]:
        st = os.stat(self.path(path))
        full = self.path(path)
        created = getattr(st, "st_birthtime", st.st_ctime)
        return {
            "size": st.st_size,
            "isFile": os.path.isfile(full),
            "isDirectory": os.path.isdir(full),
            "created": iso_from_ms(created * 1000),
            "modified": iso_from_ms(st.st_mtime * 1000),
        }

    # --- Writing ---
    def _write_file(self, path, content=""):
        if self.dry_run(f"Would write to: {stringify(path)}"):
            return True
        full = self.path(path)
        os.makedirs(os.path.dirname(full) or ".", exist_ok=True)
        with open(full, "w", encoding="utf-8") as f:
            f.write(self.encode_content(full, content))
        return True

    def _append_file(self, path, content=""):
        if self.dry_run(f"Would append to: {stringify(path)}"):
            return True
        with open(self.path(path), "a", encoding="utf-8") as f:
            f.write(stringify(content))
        return True

    def _mkdir(self, path):
        if self.dry_run(f"Would create directory: {stringify(path)}"):
            return True
        os.makedirs(self.path(path), exist_ok=True)
        return True

    def _rmdir(self, path):
        if self.dry_run(f"Would remove directory: {stringify(path)}"):
            return True
        full = self.path(path)
        if os.path.isdir(full):
            shutil.rmtree(full)
        else:
            os.remove(full)
        return True

    def _remove(self, path):
        if self.dry_run(f"Would remove: {stringify(path)}"):
            return True
        full = self.path(path)
        if os.path.isdir(full):
            raise ScriptError(f"Cannot remove a directory with remove(): {stringify(path)}")
        os.remove(full)
        return True

    def _rename(self, src, dest):
        if self.dry_run(f"Would rename: {stringify(src)} -> {stringify(dest)}"):
            return True
        os.rename(self.path(src), self.path(dest))
        return True

    def _copy(self, src, dest):
        if self.dry_run(f"Would copy: {stringify(src)} -> {stringify(dest)}"):
            return True
        shutil.copyfile(self.path(src), self.path(dest))
        return True

    # --- Path utilities ---
    def _basename(self, path, ext=None):
        name = os.path.basename(stringify(path).rstrip("/"))
        if ext and name.endswith(stringify(ext)) and name != stringify(ext):
            name = name[:-len(stringify(ext))]
        return name

    def _dirname(self, path):
        return os.path.dirname(stringify(path).rstrip("/") or "/") or "."

    def _extname(self, path):
        name = os.path.basename(stringify(path))
        return os.path.splitext(name)[1]

    def _join_path(self, *parts):
        return os.path.normpath(os.path.join(*[stringify(p) for p in parts])) if parts else "."

    def _resolve_path(self, *parts):
        return os.path.abspath(os.path.join(self.config.workdir, *[stringify(p) for p in parts]))

    def namespaces(self) -> Dict[str, Any]:
        return {
            "file": {
                "read": self._read_file,
                "write": self._write_file,
                "append": self._append_file,
                "exists": self._file_exists,
                "delete": self._remove,
                "copy": self._copy,
                "move": self._rename,
                "list": self._list_dir,
                "mkdir": self._mkdir,
                "stat": self.stat,
                "glob": self._glob,
                "readData": self.read_data,
            }
        }


__all__: List[str] = ["FileLib", "resolve_path"]
