"""
Copyright 2025 Inmanta

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

    http://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License.

Contact: code@inmanta.com
"""

from collections.abc import Hashable, Iterator, Mapping, MutableMapping, Set
from typing import Generic, Optional, TypeVar

S = TypeVar("S", bound=Hashable)
T = TypeVar("T", bound=Hashable)


class BidirectionalManyMapping(MutableMapping[S, Set[T]], Generic[S, T]):
    """
    A mutable many-to-many mapping that keeps its reverse mapping up to date. If s maps to t1 and t2, the reverse mapping
    maps both t1 and t2 to s.

    Mutations must go through this object, the sets it returns must not be modified.
    """

    def __init__(self, mapping: Optional[Mapping[S, Set[T]]] = None) -> None:
        self._primary: dict[S, set[T]] = {}
        self._reverse: dict[T, set[S]] = {}
        if mapping is not None:
            for key, values in mapping.items():
                self[key] = values

    def __getitem__(self, key: S) -> Set[T]:
        return self._primary[key]

    def __setitem__(self, key: S, values: Set[T]) -> None:
        old: Set[T] = self._primary.get(key, set())
        self._primary[key] = set(values)
        for value in values - old:
            self._reverse.setdefault(value, set()).add(key)
        for value in old - values:
            self._reverse[value].discard(key)
            if not self._reverse[value]:
                del self._reverse[value]

    def __delitem__(self, key: S) -> None:
        if key not in self._primary:
            raise KeyError(key)
        self[key] = set()
        del self._primary[key]

    def __iter__(self) -> Iterator[S]:
        return iter(self._primary)

    def __len__(self) -> int:
        return len(self._primary)

    def __repr__(self) -> str:
        return f"BidirectionalManyMapping(primary={self._primary!r}, reverse={self._reverse!r})"

    def add(self, key: S, value: T) -> None:
        """
        Add a single edge from key to value
        """
        self[key] = self._primary.get(key, set()) | {value}

    def get_reverse(self, key: T, default: Optional[Set[S]] = None) -> Optional[Set[S]]:
        """
        Return the keys that map to the given value.
        """
        return self._reverse.get(key, default)

    def reverse_view(self) -> Mapping[T, Set[S]]:
        """
        Return a read-only view on the reverse mapping. It reflects later changes to this mapping.
        """
        return _ReverseView(self)


class _ReverseView(Mapping[T, Set[S]], Generic[S, T]):
    def __init__(self, base: BidirectionalManyMapping[S, T]) -> None:
        self._base = base

    def __getitem__(self, key: T) -> Set[S]:
        return self._base._reverse[key]

    def __iter__(self) -> Iterator[T]:
        return iter(self._base._reverse)

    def __len__(self) -> int:
        return len(self._base._reverse)


class RequiresProvidesMapping(BidirectionalManyMapping[str, str]):
    """
    The requires relation between resources, with efficient access to the reverse (provides) relation.
    """

    def requires_view(self) -> Mapping[str, Set[str]]:
        """
        Returns a view of the requires relationship: resource -> the resources it requires.
        """
        return self

    def provides_view(self) -> Mapping[str, Set[str]]:
        """
        Returns a view of the provides relationship: resource -> the resources that require it.
        """
        return self.reverse_view()
