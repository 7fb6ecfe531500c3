"""
Ordered, multi-valued INI sections in the format pgBackRest reads.

Keys may repeat within a section. Entries are kept as an ordered list of
(key, value) pairs so that rendering the same input twice produces the same
bytes.
"""
from typing import Dict, Iterator, List, Optional, Tuple


class IniMultiSet:
    def __init__(self) -> None:
        self._entries: List[Tuple[str, str]] = []
        # key -> positions in _entries, oldest first
        self._index: Dict[str, List[int]] = {}

    def add(self, key: str, value: str) -> None:
        """Append another value for key."""
        self._index.setdefault(key, []).append(len(self._entries))
        self._entries.append((key, value))

    def set(self, key: str, value: str) -> None:
        """
        Replace every value of key with a single value. The key keeps the
        position where it first appeared.
        """
        positions = self._index.get(key)
        if not positions:
            self.add(key, value)
            return

        first, rest = positions[0], set(positions[1:])
        self._entries[first] = (key, value)
        if rest:
            self._entries = [e for i, e in enumerate(self._entries) if i not in rest]
            self._reindex()

    def get(self, key: str) -> Optional[str]:
        """Return the last value written for key."""
        positions = self._index.get(key)
        if not positions:
            return None
        return self._entries[positions[-1]][1]

    def get_all(self, key: str) -> List[str]:
        return [self._entries[i][1] for i in self._index.get(key, [])]

    def _reindex(self) -> None:
        self._index = {}
        for position, (key, _) in enumerate(self._entries):
            self._index.setdefault(key, []).append(position)

    def __contains__(self, key: str) -> bool:
        return key in self._index

    def __iter__(self) -> Iterator[Tuple[str, str]]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __str__(self) -> str:
        lines = []
        for key, value in self._entries:
            lines.append(f"{key} =\n" if value == "" else f"{key} = {value}\n")
        return "".join(lines)


class IniSectionSet:
    """Named sections in the order they were created."""

    def __init__(self) -> None:
        self._sections: Dict[str, IniMultiSet] = {}

    def section(self, name: str) -> IniMultiSet:
        """Return the section called name, creating it at the end if needed."""
        if name not in self._sections:
            self._sections[name] = IniMultiSet()
        return self._sections[name]

    def __getitem__(self, name: str) -> IniMultiSet:
        return self._sections[name]

    def __contains__(self, name: str) -> bool:
        return name in self._sections

    def __iter__(self) -> Iterator[str]:
        return iter(self._sections)

    def __str__(self) -> str:
        return "".join(f"\n[{name}]\n{body}" for name, body in self._sections.items())
