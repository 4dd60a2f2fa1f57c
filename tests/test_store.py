import json

import pytest

from vcall_tracer.errors import StoreError, TypeRegistrationError
from vcall_tracer.store import TypeStore, parse_struct_source
from vcall_tracer.synthesis import generate_vtable_type_def


def test_parse_generated_struct():
    (struct,) = parse_struct_source(generate_vtable_type_def(0x4010, 3))
    assert struct.name == "VTable_4010"
    assert struct.size == 48
    assert [f.name for f in struct.fields] == ["drop", "size", "align", "method1", "method2", "method3"]
    assert [f.offset for f in struct.fields] == [0, 8, 16, 24, 32, 40]
    assert struct.method_count == 3


def test_parse_32bit_struct():
    (struct,) = parse_struct_source(generate_vtable_type_def(0x4010, 2, pointer_width=4), pointer_width=4)
    assert struct.size == 20
    assert struct.fields[-1].offset == 16


def test_parse_error():
    with pytest.raises(TypeRegistrationError):
        parse_struct_source("struct Broken { undeclared_t a; };")


def test_define_type_upsert():
    store = TypeStore()
    name = "VTable_4010"
    assert store.define_type(name, generate_vtable_type_def(0x4010, 3)) == "created"
    assert store.define_type(name, generate_vtable_type_def(0x4010, 3)) == "unchanged"
    assert store.define_type(name, generate_vtable_type_def(0x4010, 2)) == "unchanged"
    assert store.get_type(name).method_count == 3
    assert store.define_type(name, generate_vtable_type_def(0x4010, 6)) == "superseded"
    assert store.get_type(name).method_count == 6


def test_define_type_requires_matching_struct():
    with pytest.raises(TypeRegistrationError) as excinfo:
        TypeStore().define_type("VTable_1", generate_vtable_type_def(0x2, 1))
    assert excinfo.value.name == "VTable_1"


def test_define_type_reports_name_on_parse_error():
    with pytest.raises(TypeRegistrationError) as excinfo:
        TypeStore().define_type("VTable_1", "struct VTable_1 { undeclared_t x; };")
    assert "VTable_1" in str(excinfo.value)


def test_save_and_load(tmp_path):
    path = tmp_path / "out" / "bin.vtable.json"
    store = TypeStore(path)
    store.define_type("VTable_4010", generate_vtable_type_def(0x4010, 2))
    store.set_annotation(0x4010, "VTables: 0x1000(2 methods)")
    assert store.dirty
    store.save()
    assert not store.dirty

    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["version"] == 1
    assert data["annotations"] == {"0x4010": "VTables: 0x1000(2 methods)"}

    loaded = TypeStore.load(path)
    assert loaded.get_type("VTable_4010").method_count == 2
    assert loaded.get_type("VTable_4010").fields[3].name == "method1"
    assert loaded.annotation_at(0x4010) == "VTables: 0x1000(2 methods)"
    assert not list(path.parent.glob("*.tmp"))


def test_missing_store_is_empty(tmp_path):
    store = TypeStore.load(tmp_path / "none.json")
    assert store.types == {}
    assert store.annotations == {}


@pytest.mark.parametrize("content", ["{not json", "[]", '{"version": 99}'])
def test_corrupt_store(tmp_path, content):
    path = tmp_path / "bad.json"
    path.write_text(content, encoding="utf-8")
    with pytest.raises(StoreError):
        TypeStore.load(path)


def test_save_without_path():
    with pytest.raises(StoreError):
        TypeStore().save()
