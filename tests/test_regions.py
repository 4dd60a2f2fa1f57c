import numpy as np

from vcall_tracer.regions import (PERM_EXECUTE, PERM_READ, PERM_WRITE, Region, RegionTable,
                                  SEMANTICS_CODE, SEMANTICS_DATA, SEMANTICS_READONLY_DATA,
                                  SEMANTICS_UNKNOWN, is_code_pointer, semantics_from_permissions)

from conftest import DATA_START, TEXT_START, TEXT_SIZE


def test_semantics_from_permissions():
    assert semantics_from_permissions(PERM_READ | PERM_EXECUTE) == SEMANTICS_CODE
    assert semantics_from_permissions(PERM_READ | PERM_WRITE | PERM_EXECUTE) == SEMANTICS_DATA
    assert semantics_from_permissions(PERM_READ | PERM_WRITE) == SEMANTICS_DATA
    assert semantics_from_permissions(PERM_READ) == SEMANTICS_READONLY_DATA
    assert semantics_from_permissions(0) == SEMANTICS_UNKNOWN


def test_find(regions):
    assert regions.find(TEXT_START).name == ".text"
    assert regions.find(TEXT_START + TEXT_SIZE - 1).name == ".text"
    assert regions.find(TEXT_START + TEXT_SIZE) is None
    assert regions.find(DATA_START + 4).name == ".data"
    assert regions.find(0x10) is None
    assert regions.find(1 << 64) is None


def test_empty_table():
    table = RegionTable()
    assert len(table) == 0
    assert table.find(TEXT_START) is None
    assert not is_code_pointer(TEXT_START, table)
    assert table.code_pointer_mask([TEXT_START]).tolist() == [False]


def test_is_code_pointer(regions):
    assert is_code_pointer(TEXT_START + 0x20, regions)
    assert not is_code_pointer(0, regions)
    assert not is_code_pointer(DATA_START, regions)
    assert not is_code_pointer(0x400010, regions)
    assert not is_code_pointer(0x4141414141414141, regions)


def test_overlapping_regions_first_match_wins():
    table = RegionTable([
        Region(0x1000, 0x1000, SEMANTICS_DATA, "outer"),
        Region(0x1800, 0x100, SEMANTICS_CODE, "inner"),
    ])
    assert table.find(0x1810).name == "outer"
    assert not is_code_pointer(0x1810, table)


def test_zero_sized_regions_dropped():
    table = RegionTable([Region(0x1000, 0, SEMANTICS_CODE, "empty")])
    assert len(table) == 0
    assert table.by_name("empty") is None


def test_code_pointer_mask_matches_scalar(regions):
    values = [0, TEXT_START, TEXT_START + 8, TEXT_START + TEXT_SIZE, DATA_START, 0x400000, 0xffffffffffffffff]
    mask = regions.code_pointer_mask(np.array(values, dtype=np.uint64))
    assert mask.tolist() == [is_code_pointer(v, regions) for v in values]


def test_by_name(regions):
    assert regions.by_name(".data").start == DATA_START
    assert regions.by_name(".bss") is None
