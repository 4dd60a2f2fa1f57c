"""Persistent type and annotation store.

Types are submitted as C struct source, parsed with libclang, and kept in a
JSON document next to the analysed binary. Registration is an upsert keyed
by type name: a definition with more method slots supersedes an existing
one, anything else leaves the stored definition untouched.
"""

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import List

from clang.cindex import CursorKind, Index, TranslationUnit

from .errors import StoreError, TypeRegistrationError

logger = logging.getLogger(__name__)

STORE_FORMAT_VERSION = 1

# Parsed without system headers; the fixed-width names used by generated
# definitions are provided here.
_PRELUDE = """
typedef unsigned long long uint64_t;
typedef unsigned int uint32_t;
"""

_TARGET_TRIPLES = {4: "i386-pc-linux-gnu", 8: "x86_64-pc-linux-gnu"}


@dataclass
class StructField:
    name: str
    type: str
    offset: int
    size: int


@dataclass
class StructType:
    name: str
    size: int
    fields: List[StructField] = field(default_factory=list)
    source: str = ""

    @property
    def method_count(self):
        return sum(1 for f in self.fields if f.name.startswith("method"))


def parse_struct_source(source, pointer_width=8):
    """Parse C source and return every struct it defines."""
    filename = "vtable_types.h"
    args = ["-x", "c", "-nostdinc", "-target", _TARGET_TRIPLES[pointer_width]]
    try:
        tu = Index.create().parse(filename, args=args,
                                  unsaved_files=[(filename, _PRELUDE + source)],
                                  options=TranslationUnit.PARSE_SKIP_FUNCTION_BODIES)
    except Exception as e:
        raise TypeRegistrationError("<source>", f"libclang failed: {e}") from e

    errors = [d for d in tu.diagnostics if d.severity >= 3]
    if errors:
        raise TypeRegistrationError("<source>", "; ".join(d.spelling for d in errors))

    structs = []
    for cursor in tu.cursor.get_children():
        if cursor.kind != CursorKind.STRUCT_DECL or not cursor.is_definition():
            continue
        fields = []
        for f in cursor.type.get_fields():
            fields.append(StructField(
                name=f.spelling,
                type=f.type.spelling,
                offset=f.get_field_offsetof() // 8,
                size=f.type.get_size(),
            ))
        structs.append(StructType(cursor.spelling, cursor.type.get_size(), fields, source))
    return structs


class TypeStore:

    def __init__(self, path=None, pointer_width=8):
        self.path = Path(path) if path else None
        self.pointer_width = pointer_width
        self.types = {}
        self.annotations = {}
        self.dirty = False

    @classmethod
    def load(cls, path, pointer_width=8):
        """Open the store at ``path``; a missing file yields an empty store."""
        store = cls(path, pointer_width)
        path = Path(path)
        if not path.exists():
            return store
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StoreError(f"Could not read type store {path}: {e}") from e

        if not isinstance(data, dict) or data.get("version") != STORE_FORMAT_VERSION:
            raise StoreError(f"Unsupported type store format in {path}")

        for name, entry in data.get("types", {}).items():
            fields = [StructField(**f) for f in entry.get("fields", [])]
            store.types[name] = StructType(name, entry["size"], fields, entry.get("source", ""))
        for addr, text in data.get("annotations", {}).items():
            store.annotations[int(addr, 16)] = text
        logger.debug(f"Loaded {len(store.types)} types and {len(store.annotations)} annotations from {path}")
        return store

    def define_type(self, name, source):
        """Register the struct ``name`` defined in ``source``.

        Returns "created", "superseded" or "unchanged".
        """
        try:
            parsed = parse_struct_source(source, self.pointer_width)
        except TypeRegistrationError as e:
            raise TypeRegistrationError(name, str(e).split(": ", 1)[-1]) from e

        matching = [s for s in parsed if s.name == name]
        if not matching:
            raise TypeRegistrationError(name, "source does not define this struct")
        new_type = matching[0]

        existing = self.types.get(name)
        if existing is not None and existing.method_count >= new_type.method_count:
            return "unchanged"

        self.types[name] = new_type
        self.dirty = True
        return "superseded" if existing is not None else "created"

    def get_type(self, name):
        return self.types.get(name)

    def set_annotation(self, address, text):
        if self.annotations.get(address) != text:
            self.annotations[address] = text
            self.dirty = True

    def annotation_at(self, address):
        return self.annotations.get(address)

    def to_dict(self):
        return {
            "version": STORE_FORMAT_VERSION,
            "pointer_width": self.pointer_width,
            "types": {
                name: {"size": t.size, "source": t.source, "fields": [asdict(f) for f in t.fields]}
                for name, t in sorted(self.types.items())
            },
            "annotations": {f"0x{addr:x}": text for addr, text in sorted(self.annotations.items())},
        }

    def save(self, path=None):
        path = Path(path) if path else self.path
        if path is None:
            raise StoreError("No path given for type store")
        path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(prefix=path.name, suffix=".tmp", dir=str(path.parent))
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(self.to_dict(), f, indent=4)
            os.replace(tmp_name, path)
        except OSError as e:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise StoreError(f"Could not write type store {path}: {e}") from e

        self.path = path
        self.dirty = False
        return path
