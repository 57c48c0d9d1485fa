from __future__ import annotations
import os
import shutil
import tempfile
import uuid
from typing import Callable, Iterable, List, Optional


class TextFiles:
    """Line-oriented file access used by ``load`` and ``store``."""

    def __init__(self, encoding: str = "utf-8") -> None:
        self.encoding = encoding

    def exists(self, path: str) -> bool:
        return os.path.isfile(path)

    def read_lines(self, path: str) -> List[str]:
        with open(path, "r", encoding=self.encoding, errors="replace", newline=None) as handle:
            return handle.read().splitlines()

    def write_lines(self, path: str, lines: Iterable[str], *, append: bool = False) -> None:
        with open(path, "a" if append else "w", encoding=self.encoding) as handle:
            for line in lines:
                handle.write(line)
                handle.write("\n")


class OsPrimitives:
    """Path and filesystem helpers behind the ``os.*`` functions."""

    def __init__(self) -> None:
        self.directory_stack: List[str] = []

    def basename(self, path: str) -> str:
        return os.path.basename(path)

    def dirname(self, path: str) -> str:
        return os.path.dirname(path)

    def change_extension(self, path: str, extension: str) -> str:
        root, _ = os.path.splitext(path)
        if extension and not extension.startswith("."):
            extension = "." + extension
        return root + extension

    def pwd(self) -> str:
        return os.getcwd()

    def cd(self, path: str) -> Optional[str]:
        previous = os.getcwd()
        try:
            os.chdir(path)
        except OSError:
            return None
        return previous

    def pushd(self, path: str) -> bool:
        if not os.path.isdir(path):
            return False
        self.directory_stack.append(os.getcwd())
        os.chdir(path)
        return True

    def popd(self) -> bool:
        if not self.directory_stack:
            return False
        os.chdir(self.directory_stack.pop())
        return True

    def mkdir(self, path: str) -> bool:
        try:
            os.makedirs(path, exist_ok=True)
        except OSError:
            return False
        return os.path.isdir(path)

    def isdir(self, path: str) -> bool:
        return os.path.isdir(path)

    def exists(self, path: str) -> bool:
        return os.path.exists(path)

    def list_files(
        self,
        directory: str,
        *,
        including: Optional[Callable[[str], bool]] = None,
        excluding: Optional[Callable[[str], bool]] = None,
        kinds: Iterable[str] = (),
    ) -> List[str]:
        """Sorted entry names of ``directory`` filtered by name predicates and kind."""
        wanted = set(kinds)
        names: List[str] = []
        with os.scandir(directory) as entries:
            for entry in entries:
                if including is not None and not including(entry.name):
                    continue
                if excluding is not None and excluding(entry.name):
                    continue
                if wanted:
                    kind = "links" if entry.is_symlink() else "dirs" if entry.is_dir() else "files"
                    if kind not in wanted:
                        continue
                names.append(entry.name)
        return sorted(names)

    def copy(self, source: str, target: str, *, unique: bool = False) -> Optional[str]:
        if os.path.isdir(target):
            target = os.path.join(target, os.path.basename(source))
        if unique and os.path.exists(target):
            root, extension = os.path.splitext(target)
            counter = 1
            while os.path.exists(f"{root}-{counter}{extension}"):
                counter += 1
            target = f"{root}-{counter}{extension}"
        try:
            shutil.copy2(source, target)
        except OSError:
            return None
        return target

    def temp_name(self, prefix: str = "ses", suffix: str = "") -> str:
        return os.path.join(tempfile.gettempdir(), f"{prefix}{uuid.uuid4().hex[:12]}{suffix}")
