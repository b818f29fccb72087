import pytest
from buildv8 import MatrixCell, PlatformInfo, ValidationError, build_matrix, out_dir_name


@pytest.mark.parametrize("cpu,is_debug,expected", [
    ("x64", True, "out.gn/x64.debug"),
    ("x64", False, "out.gn/x64.release"),
    ("x86", True, "out.gn/x86.debug"),
    ("x86", False, "out.gn/x86.release"),
    ('"x64"', True, "out.gn/x64.debug"),
])
def test_out_dir_name(cpu, is_debug, expected):
    assert out_dir_name(cpu, is_debug) == expected

def test_cell_properties():
    cell = MatrixCell("darwin", "x86", "Debug")
    assert cell.is_debug
    assert cell.out_dir == "out.gn/x86.debug"
    assert str(cell) == "darwin/x86/Debug"

def test_cell_validation():
    with pytest.raises(ValidationError):
        MatrixCell("linux", "arm", "Debug")
    with pytest.raises(ValidationError):
        MatrixCell("linux", "x64", "debug")

def test_full_matrix_order():
    cells = build_matrix(True, platform_info=PlatformInfo("Windows"))
    assert [(c.cpu, c.build_type) for c in cells] == [
        ("x64", "Debug"),
        ("x64", "Release"),
        ("x86", "Debug"),
        ("x86", "Release"),
    ]
    assert all(c.host_os == "win32" for c in cells)

def test_full_matrix_excludes_x86_on_linux():
    cells = build_matrix(True, platform_info=PlatformInfo("Linux"))
    assert [(c.cpu, c.build_type) for c in cells] == [
        ("x64", "Debug"),
        ("x64", "Release"),
    ]

def test_single_cell():
    cells = build_matrix(False, "x86", True, PlatformInfo("Darwin"))
    assert cells == [MatrixCell("darwin", "x86", "Debug")]

def test_platform_info():
    win = PlatformInfo("Windows")
    assert win.host_os == "win32"
    assert win.staticlib_name("v8_monolith") == "v8_monolith.lib"
    assert win.path_sep == ";"
    assert win.uses_archive_bootstrap
    mac = PlatformInfo("Darwin")
    assert mac.host_os == "darwin"
    assert mac.staticlib_name("v8_monolith") == "libv8_monolith.a"
    assert mac.is_unix and not mac.uses_archive_bootstrap
    assert PlatformInfo("Linux").host_os == "linux"
