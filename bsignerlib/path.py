#!/usr/bin/env python3
# Copyright (c) 2020 The bsigner developers
# Distributed under the MIT software license, see the accompanying
# file COPYING or http://www.opensource.org/licenses/mit-license.php.

"""
Derivation Paths
****************

:class:`Path` is a BIP 32 derivation path that keeps the BIP 44 slots
(purpose, coin type, account, branch and index) in sync with its component list.

A path built in strict mode (the default) is frozen once it reaches depth 5,
after which every attempt to mutate it raises :class:`~bsignerlib.errors.InvalidPathError`.
"""

import re
from typing import (
    Any,
    Dict,
    List,
    Optional,
    Sequence,
    Union,
)

from . import base58
from .common import (
    COIN_TYPES,
    HARDENED_FLAG,
    XKEY_VERSIONS,
    Network,
    harden,
    is_hardened,
    network_from_xkey_version,
)
from .errors import (
    BadArgumentError,
    InvalidPathError,
)
from .key import ExtendedKey

MAX_DEPTH = 255
MAX_PATH_LENGTH = 3062

SLOT_NAMES = ['purpose', 'coin', 'account', 'branch', 'index']

_INDEX_RE = re.compile(r"^\d{1,10}$")

PathOption = Union[int, str, Dict[str, Any], None]


def parse_path(path: str, hard: bool = True) -> List[int]:
    """
    Convert a BIP 32 path string to a list of uint32 integers with hardened flags.

    The root must be ``m`` or ``M`` (optionally followed by ``'``).
    Each component is 1 to 10 decimal digits, hardened when suffixed with ``'`` or ``h``.

    e.g.: "m/44h/0'/5" -> [0x8000002c, 0x80000000, 5]

    :param path: The path string
    :param hard: Whether hardened components are allowed
    :return: list of integers
    """
    if not isinstance(path, str):
        raise InvalidPathError("Path must be a string")
    if len(path) < 1 or len(path) > MAX_PATH_LENGTH:
        raise InvalidPathError("Invalid path length")

    parts = path.split("/")
    if parts[0] not in ("m", "M", "m'", "M'"):
        raise InvalidPathError("Invalid path root.")

    result = []
    for part in parts[1:]:
        hardened = part.endswith(("'", "h"))
        if hardened:
            part = part[:-1]
        if len(part) > 10:
            raise InvalidPathError("Path index too large.")
        if not _INDEX_RE.match(part):
            raise InvalidPathError("Path index is non-numeric.")
        index = int(part)
        if index > 0xffffffff:
            raise InvalidPathError("Path index out of range.")
        if hardened:
            if index & HARDENED_FLAG:
                raise InvalidPathError("Path index out of range.")
            index = harden(index)
        if not hard and is_hardened(index):
            raise InvalidPathError("Path index cannot be hardened.")
        result.append(index)

    if len(result) > MAX_DEPTH:
        raise InvalidPathError("Path is too deep.")
    return result


def parse_option(option: PathOption) -> Optional[int]:
    """
    Parse a slot value given as an int, a ``"44'"`` / ``"44h"`` string or ``{"index": 44, "hardened": True}``.
    """
    if option is None:
        return None
    if isinstance(option, bool):
        raise InvalidPathError(f"Invalid path component: {option!r}")
    if isinstance(option, int):
        return _check_uint32(option)
    if isinstance(option, str):
        hardened = option.endswith(("'", "h"))
        digits = option[:-1] if hardened else option
        if not _INDEX_RE.match(digits):
            raise InvalidPathError(f"Invalid path component: {option!r}")
        value = _check_uint32(int(digits))
        return harden(value) if hardened else value
    if isinstance(option, dict) and isinstance(option.get('index'), int):
        value = _check_uint32(option['index'])
        return harden(value) if option.get('hardened') else value
    raise InvalidPathError(f"Invalid path component: {option!r}")


def _check_uint32(value: int) -> int:
    if not 0 <= value <= 0xffffffff:
        raise InvalidPathError(f"Path component out of range: {value}")
    return value


class Path(object):
    """
    A BIP 32 derivation path with BIP 44 semantic slots.
    """

    def __init__(self, strict: bool = True) -> None:
        self._list: List[int] = []
        self.strict = strict
        self.mutable = True
        self.network: Optional[Network] = None
        self.depth = 0
        self._slots: List[Optional[int]] = [None] * len(SLOT_NAMES)

    def _check_mutable(self) -> None:
        if not self.mutable:
            raise InvalidPathError("cannot mutate finalized path")

    def _get_slot(self, i: int) -> Optional[int]:
        return self._slots[i]

    def _set_slot(self, i: int, value: PathOption) -> None:
        self._check_mutable()
        parsed = parse_option(value)
        # clearing a slot drops it and every deeper component
        if parsed is None:
            del self._list[i:]
            self.depth = len(self._list)
            for j in range(i, len(self._slots)):
                self._slots[j] = None
            return
        if i > self.depth:
            raise InvalidPathError(f"Can not set {SLOT_NAMES[i]} before {SLOT_NAMES[self.depth]}")
        self._slots[i] = parsed
        if i == len(self._list):
            self._list.append(parsed)
        else:
            self._list[i] = parsed
        if self.depth == i:
            self.depth = i + 1
        if self.strict and self.depth == 5:
            self.freeze()

    @property
    def purpose(self) -> Optional[int]:
        return self._get_slot(0)

    @purpose.setter
    def purpose(self, value: PathOption) -> None:
        self._set_slot(0, value)

    @property
    def coin(self) -> Optional[int]:
        return self._get_slot(1)

    @coin.setter
    def coin(self, value: PathOption) -> None:
        self._set_slot(1, value)

    @property
    def account(self) -> Optional[int]:
        return self._get_slot(2)

    @account.setter
    def account(self, value: PathOption) -> None:
        self._set_slot(2, value)

    @property
    def branch(self) -> Optional[int]:
        return self._get_slot(3)

    @branch.setter
    def branch(self, value: PathOption) -> None:
        self._set_slot(3, value)

    @property
    def index(self) -> Optional[int]:
        return self._get_slot(4)

    @index.setter
    def index(self, value: PathOption) -> None:
        self._set_slot(4, value)

    def _from_list(self, path: Sequence[int], hardened: bool = False) -> 'Path':
        self._check_mutable()
        if len(path) > MAX_DEPTH:
            raise InvalidPathError("Path is too deep.")

        components = []
        for uint in path:
            if isinstance(uint, bool) or not isinstance(uint, int):
                raise InvalidPathError(f"Invalid path component: {uint!r}")
            _check_uint32(uint)
            components.append(harden(uint) if hardened else uint)

        self._list = components
        self.depth = len(components)
        self._slots = [components[i] if i < len(components) else None for i in range(len(SLOT_NAMES))]

        # freeze the Path when strict mode
        # is on to prevent further mutation
        if self.strict and self.depth == 5:
            self.freeze()
        return self

    @classmethod
    def from_list(cls, path: Sequence[int], hardened: bool = False, strict: bool = True) -> 'Path':
        """
        Create a Path from a list of uint32 components.

        :param path: The components
        :param hardened: Harden every component
        :param strict: Freeze the path once it reaches depth 5
        """
        return cls(strict)._from_list(path, hardened)

    @classmethod
    def from_string(cls, path: str, strict: bool = True) -> 'Path':
        """
        Create a Path from its string form, e.g. ``m/44'/0'/0'``.
        """
        return cls(strict)._from_list(parse_path(path, True))

    @classmethod
    def from_options(cls, options: Dict[str, Any]) -> 'Path':
        """
        Create a Path from its slots.

        ``purpose`` and ``account`` are required; the coin type comes from ``network``
        when it is given, from ``coin`` otherwise. ``branch`` and ``index`` must be given together.

        :param options: Mapping with purpose, coin or network, account, and optionally branch, index and strict
        """
        if not isinstance(options, dict):
            raise InvalidPathError("Path options must be a mapping")

        path = cls(options.get('strict', True) is not False)

        purpose = parse_option(options.get('purpose'))
        account = parse_option(options.get('account'))

        # prioritize using the network
        # over passed in coin type
        if options.get('network') is not None:
            path.network = Network.get(options['network'])
            coin = harden(COIN_TYPES[path.network])
        else:
            coin = parse_option(options.get('coin'))

        branch = parse_option(options.get('branch'))
        index = parse_option(options.get('index'))

        if purpose is None:
            raise InvalidPathError("options.purpose is required.")
        if account is None:
            raise InvalidPathError("options.account is required.")
        if coin is None:
            raise InvalidPathError("options.coin or options.network is required.")
        if (branch is None) != (index is None):
            raise InvalidPathError("options.branch and options.index must be used together.")

        components = [purpose, coin, account]
        if branch is not None and index is not None:
            components += [branch, index]
        return path._from_list(components)

    @classmethod
    def from_index(cls, index: int, hardened: bool = True, base: Optional['Path'] = None) -> 'Path':
        """
        Create an account level path, reusing purpose and coin type from ``base`` (default ``m/44'/0'``).

        :param index: The account index
        :param hardened: Whether to harden the account index
        :param base: Optional path to take purpose and coin type from
        """
        purpose = base.purpose if base is not None and base.purpose is not None else harden(44)
        coin = base.coin if base is not None and base.coin is not None else harden(0)
        account = harden(_check_uint32(index)) if hardened else _check_uint32(index)
        return cls.from_list([purpose, coin, account])

    @classmethod
    def from_account_public_key(cls, xkey: Union[str, bytes]) -> 'Path':
        """
        Create the account level path an extended public key was derived at.

        The version bytes select the purpose and coin type, the key's own child number
        becomes the account. The key must be at depth 3.

        :param xkey: Base58 check encoded or raw serialized extended public key
        """
        if isinstance(xkey, str):
            try:
                xkey = base58.decode_check(xkey)
            except ValueError as e:
                raise InvalidPathError(f"Invalid extended key: {e}")
        if not isinstance(xkey, (bytes, bytearray)):
            raise InvalidPathError("xkey must be bytes or a base58 string.")

        prefix = bytes(xkey[0:4])
        base = XKEY_VERSIONS.get(prefix)
        if base is None:
            raise InvalidPathError("unknown extended key prefix")

        try:
            hdpubkey = ExtendedKey.from_bytes(bytes(xkey))
        except BadArgumentError as e:
            raise InvalidPathError(str(e))
        if hdpubkey.depth != 3:
            raise InvalidPathError("Account public key must be at depth 3.")

        path = cls()
        path.network = network_from_xkey_version(prefix)
        return path._from_list([base[0], base[1], hdpubkey.child_num])

    @classmethod
    def from_type(cls, value: Union['Path', str, bytes, Sequence[int]], hardened: bool = False) -> 'Path':
        """
        Create a Path from a Path, an extended public key, a path string or a list.
        """
        if isinstance(value, Path):
            return value.clone()
        if isinstance(value, (bytes, bytearray)):
            return cls.from_account_public_key(value)
        if isinstance(value, str):
            if not value.startswith(("m", "M")) and base58.is_base58(value):
                return cls.from_account_public_key(value)
            return cls.from_string(value)
        if isinstance(value, (list, tuple)):
            return cls.from_list(value, hardened)
        raise InvalidPathError("bad type")

    def to_list(self) -> List[int]:
        return list(self._list)

    def to_string(self) -> str:
        s = ['m']
        for uint in self._list:
            if is_hardened(uint):
                s.append(str(uint & ~HARDENED_FLAG) + "'")
            else:
                s.append(str(uint))
        return '/'.join(s)

    def __str__(self) -> str:
        return self.to_string()

    def __repr__(self) -> str:
        purpose = self.purpose & ~HARDENED_FLAG if self.purpose is not None else None
        return f"<Path bip{purpose}={self.to_string()}>"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Path):
            return NotImplemented
        return self._list == other._list

    def __len__(self) -> int:
        return self.depth

    def freeze(self) -> 'Path':
        self.mutable = False
        return self

    def is_mutable(self) -> bool:
        return self.mutable

    def clone(self) -> 'Path':
        """
        Create an independent copy. A strict copy at depth 5 is frozen again.
        """
        path = Path(self.strict)
        path.network = self.network
        return path._from_list(self._list)

    def push(self, index: PathOption, hardened: bool = False) -> 'Path':
        """
        Append a component to this path.

        :param index: The component to append
        :param hardened: Harden the component
        :return: This path, to allow chaining
        """
        self._check_mutable()
        value = parse_option(index)
        if value is None:
            raise InvalidPathError("Can not push an empty component")
        if hardened:
            value = harden(value)
        return self._from_list(self._list + [value])

    @staticmethod
    def harden(value: Union[int, str]) -> int:
        if isinstance(value, str):
            value = int(value.rstrip("'h"))
        return harden(value)

    @staticmethod
    def is_path(obj: object) -> bool:
        return isinstance(obj, Path)
