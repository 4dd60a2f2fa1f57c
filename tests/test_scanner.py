import pytest

from vcall_tracer.lifting import Add, BasicBlock, Const, Instruction, Load, Reg, Unknown, split_blocks
from vcall_tracer.scanner import (CallSite, StaticCallSiteScanner, find_call_sites, match_base_offset,
                                  match_call_target, scan_blocks)


def call(address, target):
    return Instruction(address, True, target)


def test_match_plain_dereference():
    assert match_call_target(Load(Reg("rax")), "rax") == 0


def test_match_dereference_with_offset():
    assert match_call_target(Load(Add(Reg("rax"), Const(0x18))), "rax") == 0x18
    assert match_call_target(Load(Add(Reg("RAX"), Const(-8))), "rax") == -8


@pytest.mark.parametrize("target", [
    Reg("rax"),                                   # call rax
    Const(0x401000),                              # direct call
    Load(Reg("rbx")),                             # other register
    Load(Add(Const(0x18), Reg("rax"))),           # operands swapped
    Load(Add(Reg("rax"), Reg("rcx"))),            # register index
    Load(Load(Reg("rax"))),                       # double indirection
    Load(Add(Load(Reg("rax")), Const(8))),
    Load(Unknown("rax + rcx*8")),
])
def test_other_shapes_do_not_match(target):
    assert match_call_target(target, "rax") is None


def test_match_base_offset_other_register():
    assert match_base_offset(Add(Reg("rdi"), Const(0x30)), "rdi") == 0x30
    assert match_base_offset(Add(Reg("rdi"), Const(0x30)), "rax") is None


def test_scan_blocks_ignores_non_calls():
    blocks = [BasicBlock(0x1000, [
        Instruction(0x1000, False, Load(Reg("rax"))),
        call(0x1004, Load(Reg("rax"))),
        Instruction(0x1008, True, None),
        call(0x100c, Load(Add(Reg("rax"), Const(0x20)))),
    ])]
    assert scan_blocks(blocks, "rax") == [(0x1004, 0), (0x100c, 0x20)]


def test_describe():
    assert CallSite(0x1004).describe() == "0x1004: call [rax]"
    assert CallSite(0x100c, 0x20).describe() == "0x100c: call [rax + 0x20]"
    assert CallSite(0x1010, -8).describe() == "0x1010: call [rax - 0x8]"


def test_split_blocks():
    insns = [Instruction(a) for a in (0x10, 0x14, 0x18, 0x1c)]
    blocks = split_blocks(insns, (0x14,))
    assert [b.start for b in blocks] == [0x10, 0x18]
    assert [len(b.instructions) for b in blocks] == [2, 2]


def test_scanner_finds_sites_across_functions(fake_provider_cls, function_ref):
    f1, f2, f3 = function_ref(0x1000), function_ref(0x2000), function_ref(0x3000)
    provider = fake_provider_cls({
        f1: [call(0x1010, Load(Reg("rax")))],
        f2: [call(0x2010, Const(0x1000)), call(0x2020, Load(Add(Reg("rax"), Const(0x18))))],
        f3: [],
    })
    sites = StaticCallSiteScanner(provider, "rax").scan()
    assert sorted((s.address, s.offset) for s in sites) == [(0x1010, 0), (0x2020, 0x18)]
    assert all(s.base_register == "rax" for s in sites)
    assert sorted(s.discovery_index for s in sites) == [0, 1]


def test_scanner_skips_unliftable_functions(fake_provider_cls, function_ref):
    f1, f2 = function_ref(0x1000), function_ref(0x2000)
    provider = fake_provider_cls({f1: None, f2: [call(0x2010, Load(Reg("rax")))]})
    scanner = StaticCallSiteScanner(provider, "rax")
    sites = scanner.scan()
    assert [s.address for s in sites] == [0x2010]
    assert scanner.skipped_functions == 1


def test_scanner_without_matches(fake_provider_cls, function_ref):
    provider = fake_provider_cls({function_ref(0x1000): [call(0x1010, Reg("rax"))]})
    assert find_call_sites(provider) == []


def test_parallel_scan_matches_serial(fake_provider_cls, function_ref):
    functions = {}
    for i in range(200):
        start = 0x10000 + i * 0x100
        insns = [call(start + 0x10, Load(Add(Reg("rax"), Const(i * 8))))] if i % 3 == 0 else []
        functions[function_ref(start)] = insns
    provider = fake_provider_cls(functions)

    serial = StaticCallSiteScanner(provider, "rax", workers=1, progress_interval=50).scan()
    parallel = StaticCallSiteScanner(provider, "rax", workers=8, progress_interval=50).scan()
    key = lambda s: (s.address, s.offset)
    assert sorted(map(key, serial)) == sorted(map(key, parallel))
    assert len(parallel) == 67
    assert sorted(s.discovery_index for s in parallel) == list(range(67))


def test_scan_explicit_function_subset(fake_provider_cls, function_ref):
    f1, f2 = function_ref(0x1000), function_ref(0x2000)
    provider = fake_provider_cls({
        f1: [call(0x1010, Load(Reg("rax")))],
        f2: [call(0x2010, Load(Reg("rax")))],
    })
    sites = StaticCallSiteScanner(provider).scan([f2])
    assert [s.address for s in sites] == [0x2010]


def test_overlapping_functions_yield_one_site(fake_provider_cls, function_ref):
    outer = function_ref(0x1000, "outer", size=0x100)
    inner = function_ref(0x1008, "inner", size=0x20)
    shared = call(0x1010, Load(Add(Reg("rax"), Const(0x18))))
    provider = fake_provider_cls({outer: [shared], inner: [shared]})

    for workers in (1, 4):
        sites = StaticCallSiteScanner(provider, "rax", workers=workers).scan()
        assert [(s.address, s.offset, s.discovery_index) for s in sites] == [(0x1010, 0x18, 0)]
