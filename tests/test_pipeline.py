"""Tests for the stage pipeline and the command line"""

import json
import pytest
import sys
import zipfile
from unittest.mock import patch
from buildv8 import (
    Pipeline,
    Settings,
    StageResult,
    PlatformInfo,
    Workspace,
    V8Builder,
    V8SourceBuilder,
    DepotToolsBuilder,
    CommandError,
    main,
)

VERSION_H = """\
#define V8_MAJOR_VERSION 9
#define V8_MINOR_VERSION 0
#define V8_BUILD_NUMBER 1
#define V8_PATCH_LEVEL 0
"""


@pytest.fixture
def workspace(tmp_path):
    """A linux workspace with depot_tools and a v8 checkout in place"""
    ws = Workspace(tmp_path, PlatformInfo("Linux"))
    ws.depot_tools.mkdir(parents=True)
    (ws.v8_src / "include").mkdir(parents=True)
    (ws.v8_src / "include" / "v8.h").write_text("// v8")
    ws.version_file.write_text(VERSION_H)
    return ws


def fake_ninja(shellcmd, cwd=".", context=None):
    if shellcmd[0] == "ninja":
        lib = cwd / shellcmd[2] / "obj" / "libv8_monolith.a"
        lib.parent.mkdir(parents=True, exist_ok=True)
        lib.write_bytes(b"lib")


def make_pipeline(workspace, **settings):
    return Pipeline(
        Settings(**settings),
        workspace=workspace,
        platform_info=PlatformInfo("Linux"),
        environ={"PATH": "/usr/bin"},
    )


class TestStageResult:
    def test_failure_from_error(self):
        result = StageResult.failure("v8 linux/x64/Debug", CommandError("ninja", 2))
        assert not result.ok
        assert result.kind == "command"
        assert result.returncode == 2
        assert "exit 2" in str(result)

    def test_success(self, tmp_path):
        result = StageResult.success("headers", tmp_path, skipped=True)
        assert result.ok and result.skipped
        assert str(result).startswith("headers: skipped")


class TestPipeline:
    def test_context(self, workspace):
        pipeline = make_pipeline(workspace)
        assert pipeline.context.env["PATH"] == f"{workspace.depot_tools}:/usr/bin"

    def test_full_matrix_run(self, workspace):
        pipeline = make_pipeline(workspace)
        with patch.object(V8Builder, 'cmd', side_effect=fake_ninja) as mock_cmd, \
             patch.object(V8SourceBuilder, 'revision', return_value="abc"):
            assert pipeline.run()

        # linux builds x64 only: gn + ninja for two cells
        assert mock_cmd.call_count == 4
        stages = [r.stage for r in pipeline.results]
        assert stages == [
            "depot_tools",
            "v8-source",
            "headers",
            "v8 linux/x64/Debug",
            "v8 linux/x64/Release",
            "release",
        ]
        assert pipeline.results[0].skipped and pipeline.results[1].skipped
        release = workspace.releases / "v8-9.0.1.0-linux.zip"
        assert pipeline.results[-1].path == release
        with zipfile.ZipFile(release) as zf:
            names = zf.namelist()
        assert "include/v8.h" in names
        assert "linux/x64/Debug/libv8_monolith.a" in names
        assert "linux/x64/Release/libv8_monolith.a" in names

    def test_second_run_builds_nothing(self, workspace):
        with patch.object(V8Builder, 'cmd', side_effect=fake_ninja), \
             patch.object(V8SourceBuilder, 'revision', return_value="abc"):
            assert make_pipeline(workspace).run()
        with patch.object(V8Builder, 'cmd') as mock_cmd, \
             patch.object(V8SourceBuilder, 'revision', return_value="abc"):
            assert make_pipeline(workspace).run()
        mock_cmd.assert_not_called()

    def test_single_cell_run_has_no_release(self, workspace):
        pipeline = make_pipeline(workspace, build_all=False, is_debug=True, target_cpu="x86")
        with patch.object(V8Builder, 'cmd', side_effect=fake_ninja), \
             patch.object(V8SourceBuilder, 'revision', return_value="abc"):
            assert pipeline.run()
        assert [r.stage for r in pipeline.results][-1] == "v8 linux/x86/Debug"
        assert (workspace.build / "linux" / "x86" / "Debug" / "libv8_monolith.a").exists()
        assert not workspace.releases.exists()

    def test_stops_at_first_failed_cell(self, workspace):
        pipeline = make_pipeline(workspace)
        with patch.object(V8Builder, 'cmd', side_effect=CommandError("gn", 1)) as mock_cmd, \
             patch.object(V8SourceBuilder, 'revision', return_value="abc"):
            assert not pipeline.run()
        assert mock_cmd.call_count == 1
        assert pipeline.results[-1].stage == "v8 linux/x64/Debug"
        assert not pipeline.ok
        assert not workspace.releases.exists()

    def test_bootstrap_failure_stops_everything(self, tmp_path):
        ws = Workspace(tmp_path, PlatformInfo("Linux"))
        pipeline = make_pipeline(ws)
        with patch.object(DepotToolsBuilder, 'cmd',
                          side_effect=CommandError("git clone", 128)), \
             patch.object(V8SourceBuilder, 'cmd') as source_cmd, \
             patch.object(V8Builder, 'cmd') as build_cmd:
            assert not pipeline.run()
        source_cmd.assert_not_called()
        build_cmd.assert_not_called()
        assert len(pipeline.results) == 1
        assert pipeline.results[0].returncode == 128

    def test_trust_existing_skips_revision(self, workspace):
        pipeline = make_pipeline(workspace, verify_fingerprint=False)
        with patch.object(V8Builder, 'cmd', side_effect=fake_ninja), \
             patch.object(V8SourceBuilder, 'revision') as mock_revision:
            assert pipeline.run()
        mock_revision.assert_not_called()

    def test_release_failure(self, workspace):
        pipeline = make_pipeline(workspace, strict_version=True)
        workspace.version_file.write_text("#define V8_MAJOR_VERSION 9\n")
        with patch.object(V8Builder, 'cmd', side_effect=fake_ninja), \
             patch.object(V8SourceBuilder, 'revision', return_value="abc"):
            assert not pipeline.run()
        assert pipeline.results[-1].stage == "release"
        assert pipeline.results[-1].kind == "validation"

    def test_dry_run(self, workspace):
        pipeline = make_pipeline(workspace)
        output = []
        with patch('builtins.print', side_effect=lambda x: output.append(x)), \
             patch.object(V8Builder, 'cmd') as mock_cmd:
            pipeline.dry_run()
        mock_cmd.assert_not_called()
        full_output = '\n'.join(output)
        assert "BUILD PLAN" in full_output
        assert "linux/x64/Debug  ->  out.gn/x64.debug" in full_output
        assert "x86" not in full_output.split("Matrix Cells:")[1].split("Environment:")[0]
        assert "No changes were made" in full_output


class TestMain:
    def test_write_settings(self, tmp_path):
        out = tmp_path / "settings.json"
        argv = ["buildv8", "--single", "--debug", "--cpu", "x86", "-j", "8", "-w", str(out)]
        with patch.object(sys, 'argv', argv), pytest.raises(SystemExit) as exc:
            main()
        assert exc.value.code == 0
        data = json.loads(out.read_text())
        assert data["build_all"] is False
        assert data["is_debug"] is True
        assert data["target_cpu"] == "x86"
        assert data["jobs"] == 8

    def test_config_file_with_overrides(self, tmp_path):
        cfg = tmp_path / "in.json"
        Settings(build_all=False, target_cpu="x86").write_json(cfg)
        out = tmp_path / "out.json"
        argv = ["buildv8", "-c", str(cfg), "--trust-existing", "-w", str(out)]
        with patch.object(sys, 'argv', argv), pytest.raises(SystemExit):
            main()
        data = json.loads(out.read_text())
        assert data["target_cpu"] == "x86"
        assert data["build_all"] is False
        assert data["verify_fingerprint"] is False

    def test_invalid_settings(self, tmp_path):
        cfg = tmp_path / "in.json"
        cfg.write_text(json.dumps({"target_cpu": "arm"}))
        with patch.object(sys, 'argv', ["buildv8", "-c", str(cfg)]), \
             pytest.raises(SystemExit) as exc:
            main()
        assert exc.value.code == 2

    def test_dry_run(self, tmp_path):
        argv = ["buildv8", "--root", str(tmp_path), "--dry-run"]
        with patch.object(sys, 'argv', argv), \
             patch('builtins.print'), \
             patch.object(Pipeline, 'run') as mock_run, \
             pytest.raises(SystemExit) as exc:
            main()
        assert exc.value.code == 0
        mock_run.assert_not_called()

    @pytest.mark.parametrize("ok,code", [(True, 0), (False, 1)])
    def test_exit_code(self, tmp_path, ok, code):
        argv = ["buildv8", "--root", str(tmp_path)]
        with patch.object(sys, 'argv', argv), \
             patch.object(Pipeline, 'run', return_value=ok), \
             pytest.raises(SystemExit) as exc:
            main()
        assert exc.value.code == code
