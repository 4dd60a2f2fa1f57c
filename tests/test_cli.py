import pytest

from vcall_tracer.cli import _config_from_args, parse_args


def test_trace_options_after_binary():
    args = parse_args(["trace", "./bin", "--max-iterations", "5", "--output", "d.json", "--store", "s.json"])
    config = _config_from_args(args)
    assert str(args.binary) == "bin"
    assert config.max_iterations == 5
    assert str(args.output) == "d.json"
    assert str(args.store) == "s.json"
    assert config.launch_args == []


def test_trace_program_arguments_after_separator():
    args = parse_args([
        "trace", "./bin", "--max-slots", "0x40", "--no-targets", "--", "-v", "--max-iterations", "input.txt",
    ])
    config = _config_from_args(args)
    assert args.command == "trace"
    assert config.max_vtable_slots == 0x40
    assert config.resolve_targets is False
    assert config.annotate is True
    assert config.max_iterations is None
    assert config.launch_args == ["-v", "--max-iterations", "input.txt"]


def test_trace_options_before_binary():
    args = parse_args(["trace", "--max-iterations", "100", "./bin"])
    assert _config_from_args(args).max_iterations == 100


def test_scan_arguments():
    args = parse_args(["--debug", "scan", "--base-register", "rdi", "--workers", "2", "./bin"])
    config = _config_from_args(args)
    assert config.debug is True
    assert config.base_register == "rdi"
    assert config.scan_workers == 2
    assert config.launch_args == []


def test_program_arguments_rejected_outside_trace():
    with pytest.raises(SystemExit):
        parse_args(["scan", "./bin", "--", "-v"])


def test_config_file_is_overridden_by_flags(tmp_path):
    path = tmp_path / "config.json"
    path.write_text('{"base_register": "rcx", "max_iterations": 5}', encoding="utf-8")
    args = parse_args(["--config", str(path), "trace", "./bin", "--max-iterations", "9"])
    config = _config_from_args(args)
    assert config.base_register == "rcx"
    assert config.max_iterations == 9


def test_command_required():
    with pytest.raises(SystemExit):
        parse_args([])
