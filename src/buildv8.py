#!/usr/bin/env python3
"""buildv8.py - builds v8 static libraries from source

features:

- Single script which bootstraps depot_tools, fetches and builds v8
- Builds every cpu x build-type combination for the host os (x86 is skipped
  on linux), or a single combination
- Skips cells whose built library carries a fingerprint matching the
  requested gn args and source revision
- Packages headers and libraries into a versioned release zip

class structure:

PlatformInfo
GnArgs
MatrixCell
ExecContext
Settings
StageResult
VersionReader

ShellCmd
    Workspace
    ReleasePackager
    AbstractBuilder
        DepotToolsBuilder
        V8SourceBuilder
        HeadersBuilder
        V8Builder

Pipeline

"""

import argparse
import datetime
import hashlib
import json
import logging
import os
import platform
import shutil
import stat
import subprocess
import sys
import zipfile
from collections.abc import Iterator, Mapping
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Optional, Union
from urllib.request import urlretrieve

__version__ = "0.1.0"

# ----------------------------------------------------------------------------
# type aliases

Pathlike = Union[str, Path]
InputFn = Callable[[str], str]


# ----------------------------------------------------------------------------
# env helpers


def getenv(key: str, default: bool = False) -> bool:
    """convert '0','1' env values to bool {True, False}"""
    return bool(int(os.getenv(key, default)))


# ----------------------------------------------------------------------------
# constants

PY_VER_MINOR = sys.version_info.minor

V8 = "v8"
DEPOT_TOOLS = "depot_tools"
DEPOT_TOOLS_REPO = "https://chromium.googlesource.com/chromium/tools/depot_tools.git"
DEPOT_TOOLS_ZIP_URL = "https://storage.googleapis.com/chrome-infra/depot_tools.zip"

HOST_OSES = ["win32", "linux", "darwin"]
CPUS = ["x64", "x86"]
BUILD_TYPES = ["Debug", "Release"]
MSVS_VERSIONS = ["2015", "2017", "2019"]
VERSION_MACROS = [
    "V8_MAJOR_VERSION",
    "V8_MINOR_VERSION",
    "V8_BUILD_NUMBER",
    "V8_PATCH_LEVEL",
]

# ----------------------------------------------------------------------------
# envar options

DEBUG = getenv("DEBUG", default=True)
COLOR = getenv("COLOR", default=True)

# ----------------------------------------------------------------------------
# platform detection utilities


class PlatformInfo:
    """Centralized platform detection and configuration"""

    def __init__(self, system: Optional[str] = None) -> None:
        self.system = system or platform.system()
        self.machine = platform.machine()

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} '{self.host_os}'>"

    @property
    def is_darwin(self) -> bool:
        """Check if running on macOS"""
        return self.system == "Darwin"

    @property
    def is_linux(self) -> bool:
        """Check if running on Linux"""
        return self.system == "Linux"

    @property
    def is_windows(self) -> bool:
        """Check if running on Windows"""
        return self.system == "Windows"

    @property
    def is_unix(self) -> bool:
        """Check if running on Unix-like system"""
        return self.is_darwin or self.is_linux

    @property
    def host_os(self) -> str:
        """os name used in the output layout: win32, linux or darwin"""
        return {
            "Windows": "win32",
            "Linux": "linux",
            "Darwin": "darwin",
        }.get(self.system, self.system.lower())

    @property
    def path_sep(self) -> str:
        """separator of PATH entries"""
        return ";" if self.is_windows else ":"

    @property
    def uses_archive_bootstrap(self) -> bool:
        """depot_tools comes as a zip archive instead of a git clone"""
        return self.is_windows

    def staticlib_name(self, name: str) -> str:
        """platform specific static library filename"""
        if self.is_windows:
            return f"{name}.lib"
        return f"lib{name}.a"

    def get_target_cpus(self) -> list[str]:
        """cpus buildable on this host, in build order"""
        if self.is_linux:
            # x86 builds fail with the linux toolchain
            return ["x64"]
        return list(CPUS)


# Global platform info instance
PLATFORM_INFO = PlatformInfo()

# ----------------------------------------------------------------------------
# logging config


class CustomFormatter(logging.Formatter):
    """custom logging formatting class"""

    white = "\x1b[97;20m"
    grey = "\x1b[38;20m"
    green = "\x1b[32;20m"
    yellow = "\x1b[33;20m"
    red = "\x1b[31;20m"
    bold_red = "\x1b[31;1m"
    reset = "\x1b[0m"
    fmt = "%(delta)s - %(levelname)s - %(name)s.%(funcName)s - %(message)s"
    cfmt = (
        f"{white}%(delta)s{reset} - "
        f"{{}}%(levelname)s{{}} - "
        f"{white}%(name)s.%(funcName)s{reset} - "
        f"{grey}%(message)s{reset}"
    )

    FORMATS = {
        logging.DEBUG: cfmt.format(grey, reset),
        logging.INFO: cfmt.format(green, reset),
        logging.WARNING: cfmt.format(yellow, reset),
        logging.ERROR: cfmt.format(red, reset),
        logging.CRITICAL: cfmt.format(bold_red, reset),
    }

    def __init__(self, use_color: bool = COLOR) -> None:
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        """custom logger formatting method"""
        if not self.use_color:
            log_fmt: str = self.fmt
        else:
            log_fmt = self.FORMATS.get(record.levelno, self.fmt)
        if PY_VER_MINOR > 10:
            duration = datetime.datetime.fromtimestamp(
                record.relativeCreated / 1000, datetime.UTC
            )
        else:
            duration = datetime.datetime.utcfromtimestamp(record.relativeCreated / 1000)
        record.delta = duration.strftime("%H:%M:%S")
        formatter = logging.Formatter(log_fmt)
        return formatter.format(record)


strm_handler = logging.StreamHandler()
strm_handler.setFormatter(CustomFormatter())
logging.basicConfig(
    level=logging.DEBUG if DEBUG else logging.INFO,
    handlers=[strm_handler],
)


# ----------------------------------------------------------------------------
# custom exceptions


class BuildError(Exception):
    """Base exception for build errors"""

    kind = "build"


class CommandError(BuildError):
    """Exception for command execution errors"""

    kind = "command"

    def __init__(self, msg: str, returncode: Optional[int] = None) -> None:
        super().__init__(msg)
        self.returncode = returncode


class DownloadError(BuildError):
    """Exception for download errors"""

    kind = "download"


class ExtractionError(BuildError):
    """Exception for extraction errors"""

    kind = "extraction"


class ValidationError(BuildError):
    """Exception for validation errors"""

    kind = "validation"


class PackagingError(BuildError):
    """Exception for release packaging errors"""

    kind = "packaging"


# ----------------------------------------------------------------------------
# gn build arguments

GN_ARGS_SCHEMA: dict[str, type] = {
    "is_debug": bool,
    "target_cpu": str,
    "v8_target_cpu": str,
    "is_component_build": bool,
    "v8_static_library": bool,
    "v8_monolithic": bool,
    "v8_use_external_startup_data": bool,
    "v8_enable_test_features": bool,
    "v8_enable_i18n_support": bool,
    "treat_warnings_as_errors": bool,
    "symbol_level": int,
    "v8_use_snapshot": bool,
    "is_clang": bool,
    "use_sysroot": bool,
    "use_custom_libcxx": bool,
}

DEFAULT_GN_ARGS: dict[str, Any] = {
    "is_debug": False,
    "target_cpu": "x64",
    "v8_target_cpu": "x64",
    "is_component_build": False,
    "v8_static_library": True,
    "v8_monolithic": True,
    "v8_use_external_startup_data": False,
    "v8_enable_test_features": False,
    "v8_enable_i18n_support": False,
    "treat_warnings_as_errors": False,
    "symbol_level": 0,
    "v8_use_snapshot": False,
    "is_clang": True,
    "use_sysroot": False,
    "use_custom_libcxx": False,
}


class GnArgs(Mapping):
    """Immutable set of gn build arguments checked against GN_ARGS_SCHEMA

    Values are held as python types; string values are quoted only when
    serialized, so `target_cpu` is stored as `x64` and emitted as
    `target_cpu="x64"`.
    """

    def __init__(
        self, args: Optional[Mapping[str, Any]] = None, **overrides: Any
    ) -> None:
        merged = dict(DEFAULT_GN_ARGS)
        if args:
            merged.update(args)
        merged.update(overrides)
        self.validate(merged)
        # schema order keeps serialization stable
        self._args = MappingProxyType({k: merged[k] for k in GN_ARGS_SCHEMA})

    def __getitem__(self, key: str) -> Any:
        return self._args[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._args)

    def __len__(self) -> int:
        return len(self._args)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} '{self.serialize()}'>"

    @staticmethod
    def validate(args: Mapping[str, Any]) -> None:
        """raise ValidationError unless args conform to the schema"""
        for key, value in args.items():
            if key not in GN_ARGS_SCHEMA:
                raise ValidationError(f"unknown gn arg: {key}")
            expected = GN_ARGS_SCHEMA[key]
            if (expected is int and isinstance(value, bool)) or not isinstance(
                value, expected
            ):
                raise ValidationError(
                    f"gn arg {key} must be {expected.__name__}, got {value!r}"
                )
        for key in ("target_cpu", "v8_target_cpu"):
            if key in args and args[key] not in CPUS:
                raise ValidationError(f"unsupported {key}: {args[key]!r}")
        if "symbol_level" in args and args["symbol_level"] not in (0, 1, 2):
            raise ValidationError(f"symbol_level out of range: {args['symbol_level']}")

    def override(self, **overrides: Any) -> "GnArgs":
        """return a copy with some arguments replaced"""
        return GnArgs(self._args, **overrides)

    def for_cell(self, cell: "MatrixCell") -> "GnArgs":
        """specialize arguments for a matrix cell"""
        return self.override(
            target_cpu=cell.cpu,
            v8_target_cpu=cell.cpu,
            is_debug=cell.is_debug,
            symbol_level=2 if cell.is_debug else 0,
        )

    @staticmethod
    def format_value(value: Any) -> str:
        """gn literal for a python value"""
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, str):
            return f'"{value}"'
        return str(value)

    def serialize(self) -> str:
        """gn --args value: space separated key=value pairs"""
        return " ".join(f"{k}={self.format_value(v)}" for k, v in self._args.items())

    def escaped(self) -> str:
        """serialized args with double quotes escaped for a shell command line"""
        return self.serialize().replace('"', '\\"')

    def fingerprint(self, revision: str = "") -> str:
        """hash identifying a build of these args at a source revision"""
        data = f"{self.serialize()}\n{revision}"
        return hashlib.sha256(data.encode("utf8")).hexdigest()

    def to_dict(self) -> dict[str, Any]:
        return dict(self._args)


# ----------------------------------------------------------------------------
# build matrix


def out_dir_name(cpu: str, is_debug: bool) -> str:
    """gn output dir of a cpu/build-type pair: out.gn/x64.debug"""
    cpu = cpu.replace('"', "")
    return f"out.gn/{cpu}.{'debug' if is_debug else 'release'}"


@dataclass(frozen=True)
class MatrixCell:
    """One (os, cpu, build type) combination of the build matrix"""

    host_os: str
    cpu: str
    build_type: str

    def __post_init__(self) -> None:
        if self.cpu not in CPUS:
            raise ValidationError(f"unsupported cpu: {self.cpu!r}")
        if self.build_type not in BUILD_TYPES:
            raise ValidationError(f"unsupported build type: {self.build_type!r}")

    def __str__(self) -> str:
        return f"{self.host_os}/{self.cpu}/{self.build_type}"

    @property
    def is_debug(self) -> bool:
        return self.build_type == "Debug"

    @property
    def out_dir(self) -> str:
        return out_dir_name(self.cpu, self.is_debug)


def build_matrix(
    build_all: bool,
    cpu: str = "x64",
    is_debug: bool = False,
    platform_info: Optional[PlatformInfo] = None,
) -> list[MatrixCell]:
    """cells to build, in build order

    The full matrix is x64 debug, x64 release, x86 debug, x86 release
    minus the cpus the host cannot build.
    """
    info = platform_info or PLATFORM_INFO
    if not build_all:
        return [MatrixCell(info.host_os, cpu, "Debug" if is_debug else "Release")]
    return [
        MatrixCell(info.host_os, _cpu, build_type)
        for _cpu in info.get_target_cpus()
        for build_type in BUILD_TYPES
    ]


# ----------------------------------------------------------------------------
# execution context


@dataclass(frozen=True)
class ExecContext:
    """Environment handed to every external command

    Replaces in-place edits of os.environ: each modifier returns a new
    context and the process environment is never touched.
    """

    env: Mapping[str, str]
    path_sep: str = os.pathsep

    @classmethod
    def from_environ(
        cls, environ: Optional[Mapping[str, str]] = None, path_sep: str = os.pathsep
    ) -> "ExecContext":
        """snapshot of the given (default: current) environment"""
        if environ is None:
            environ = os.environ
        return cls(MappingProxyType(dict(environ)), path_sep)

    def with_env(self, **values: str) -> "ExecContext":
        env = dict(self.env)
        env.update(values)
        return ExecContext(MappingProxyType(env), self.path_sep)

    def setdefault(self, key: str, value: str) -> "ExecContext":
        """set key only if it is not already defined"""
        if key in self.env:
            return self
        return self.with_env(**{key: value})

    def prepend_path(self, directory: Pathlike) -> "ExecContext":
        parts = [p for p in self.env.get("PATH", "").split(self.path_sep) if p]
        return self.with_env(PATH=self.path_sep.join([str(directory)] + parts))

    def which(self, name: str) -> Optional[str]:
        """resolve an executable against the context PATH"""
        return shutil.which(name, path=self.env.get("PATH", ""))

    def environ(self) -> dict[str, str]:
        return dict(self.env)


# ----------------------------------------------------------------------------
# settings


@dataclass(frozen=True)
class Settings:
    """Validated build parameters, resolved before any stage runs"""

    build_all: bool = True
    is_debug: bool = False
    target_cpu: str = "x64"
    use_clang: Optional[bool] = None
    use_local_toolchain: bool = True
    msvs_version: str = "2019"
    monolithic: bool = True
    jobs: Optional[int] = None
    verify_fingerprint: bool = True
    strict_version: bool = False
    root: str = "."

    def __post_init__(self) -> None:
        if self.target_cpu not in CPUS:
            raise ValidationError(f"target cpu must be one of {CPUS}")
        if str(self.msvs_version) not in MSVS_VERSIONS:
            raise ValidationError(f"msvs version must be one of {MSVS_VERSIONS}")
        if self.jobs is not None and (
            isinstance(self.jobs, bool) or not isinstance(self.jobs, int) or self.jobs < 1
        ):
            raise ValidationError(f"jobs must be a positive integer, got {self.jobs!r}")
        for name in (
            "build_all",
            "is_debug",
            "use_local_toolchain",
            "monolithic",
            "verify_fingerprint",
            "strict_version",
        ):
            if not isinstance(getattr(self, name), bool):
                raise ValidationError(f"{name} must be a boolean")
        if self.use_clang is not None and not isinstance(self.use_clang, bool):
            raise ValidationError("use_clang must be a boolean or null")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Settings":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValidationError(f"unknown settings: {', '.join(unknown)}")
        return cls(**data)

    @classmethod
    def from_json(cls, path: Pathlike) -> "Settings":
        """load settings from a json file"""
        try:
            with open(path, encoding="utf8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ValidationError(f"could not read settings from {path}: {e}") from e
        if not isinstance(data, dict):
            raise ValidationError(f"settings in {path} must be a json object")
        return cls.from_dict(data)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def write_json(self, to: Pathlike) -> None:
        """Write settings to JSON file"""
        with open(to, "w", encoding="utf8") as f:
            json.dump(self.to_dict(), f, indent=4)

    def resolve_clang(self, platform_info: PlatformInfo) -> bool:
        if self.use_clang is None:
            return not platform_info.is_windows
        return self.use_clang

    def gn_args(self, platform_info: Optional[PlatformInfo] = None) -> GnArgs:
        """base gn args; per cell values are filled in by GnArgs.for_cell"""
        info = platform_info or PLATFORM_INFO
        return GnArgs(
            is_debug=self.is_debug,
            target_cpu=self.target_cpu,
            v8_target_cpu=self.target_cpu,
            v8_monolithic=self.monolithic,
            is_clang=self.resolve_clang(info),
        )

    def exec_context(
        self,
        workspace: "Workspace",
        platform_info: Optional[PlatformInfo] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> ExecContext:
        """environment for external commands: depot_tools first on PATH"""
        info = platform_info or PLATFORM_INFO
        ctx = ExecContext.from_environ(environ, path_sep=info.path_sep)
        if info.is_windows:
            if self.use_local_toolchain:
                ctx = ctx.setdefault("DEPOT_TOOLS_WIN_TOOLCHAIN", "0")
            ctx = ctx.setdefault("GYP_MSVS_VERSION", str(self.msvs_version))
        return ctx.prepend_path(workspace.depot_tools)


def get_user_input(
    prop: str,
    options: Optional[list[str]] = None,
    default: str = "",
    input_fn: InputFn = input,
) -> str:
    """ask until the answer is one of options (case-insensitive)"""
    _options = [o.lower() for o in options or []]
    question = f"{prop} [{', '.join(_options)}]: ({default}) "
    while True:
        answer = input_fn(question).strip() or default
        if not _options or answer.lower() in _options:
            return answer


def prompt_settings(
    platform_info: Optional[PlatformInfo] = None,
    input_fn: InputFn = input,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """interactive adapter producing the same Settings as the command line"""
    info = platform_info or PLATFORM_INFO
    env = os.environ if environ is None else environ

    def ask(prop: str, options: list[str], default: str) -> str:
        return get_user_input(prop, options, default, input_fn=input_fn)

    build_all = (
        ask("Build all? (Release and Debug for x86 and x64)", ["y", "n"], "y").lower()
        == "y"
    )
    is_debug = False
    target_cpu = "x64"
    if not build_all:
        is_debug = ask("is debug build", ["true", "false"], "false").lower() == "true"
        target_cpu = ask("target cpu", CPUS, "x64").lower()

    options: dict[str, Any] = {}
    if info.is_windows:
        if "DEPOT_TOOLS_WIN_TOOLCHAIN" not in env:
            options["use_local_toolchain"] = (
                ask("use locally installed toolchain?", ["y", "n"], "y").lower() == "y"
            )
        if "GYP_MSVS_VERSION" not in env:
            options["msvs_version"] = ask("set MSVC version", MSVS_VERSIONS, "2019")
    else:
        options["use_clang"] = ask("use clang?", ["y", "n"], "y").lower() == "y"

    return Settings(
        build_all=build_all, is_debug=is_debug, target_cpu=target_cpu, **options
    )


# ----------------------------------------------------------------------------
# stage results


@dataclass(frozen=True)
class StageResult:
    """Outcome of one pipeline stage: success with a path or failure with a kind"""

    stage: str
    ok: bool
    path: Optional[Path] = None
    skipped: bool = False
    kind: Optional[str] = None
    returncode: Optional[int] = None
    message: str = ""

    @classmethod
    def success(
        cls,
        stage: str,
        path: Optional[Path] = None,
        skipped: bool = False,
        message: str = "",
    ) -> "StageResult":
        return cls(stage, True, path=path, skipped=skipped, message=message)

    @classmethod
    def failure(cls, stage: str, error: BuildError) -> "StageResult":
        return cls(
            stage,
            False,
            kind=error.kind,
            returncode=getattr(error, "returncode", None),
            message=str(error),
        )

    def __str__(self) -> str:
        if not self.ok:
            code = "" if self.returncode is None else f" (exit {self.returncode})"
            return f"{self.stage}: FAILED [{self.kind}]{code} {self.message}"
        status = "skipped" if self.skipped else "ok"
        detail = self.message or (str(self.path) if self.path else "")
        return f"{self.stage}: {status} {detail}".rstrip()


# ----------------------------------------------------------------------------
# utility classes


class ShellCmd:
    """Provides platform agnostic file/folder handling."""

    log: logging.Logger

    def cmd(
        self,
        shellcmd: list[str],
        cwd: Pathlike = ".",
        context: Optional[ExecContext] = None,
    ) -> None:
        """Run command within working directory, attached to the terminal

        Args:
            shellcmd: Command as list of args
            cwd: Working directory for command execution
            context: Environment of the command (default: current environment)

        Raises:
            CommandError: If the command cannot be started or exits nonzero
        """
        ctx = context or ExecContext.from_environ()
        self.log.info("%s (in %s)", " ".join(shellcmd), cwd)
        args = list(shellcmd)
        if PLATFORM_INFO.is_windows:
            # CreateProcess does not search PATH for .bat wrappers
            args[0] = ctx.which(args[0]) or args[0]
        try:
            subprocess.check_call(args, cwd=str(cwd), env=ctx.environ())
        except subprocess.CalledProcessError as e:
            self.log.critical("Command failed: %s", e)
            raise CommandError(
                f"Command failed: {' '.join(shellcmd)}", returncode=e.returncode
            ) from e
        except OSError as e:
            self.log.critical("Command could not be started: %s", e)
            raise CommandError(f"Command could not be started: {shellcmd[0]}") from e

    def get(
        self, shellcmd: list[str], cwd: Pathlike = ".", context: Optional[ExecContext] = None
    ) -> str:
        """get output of shellcmd"""
        ctx = context or ExecContext.from_environ()
        return subprocess.check_output(
            shellcmd, encoding="utf8", cwd=str(cwd), env=ctx.environ()
        ).strip()

    def download(self, url: str, tofolder: Optional[Pathlike] = None) -> Path:
        """Download a file from a url to an optional folder

        Raises:
            DownloadError: on a non-2xx response or a transport error
        """
        _path = Path(os.path.basename(url))
        if tofolder:
            _path = Path(tofolder).joinpath(_path)
        try:
            self.log.info("Downloading %s...", url)
            filename, _ = urlretrieve(url, filename=_path)
            self.log.info("Download complete: %s", os.path.basename(str(filename)))
            return Path(filename)
        except Exception as e:
            if _path.exists():
                _path.unlink()
            self.log.critical("Failed to download %s: %s", url, e)
            raise DownloadError(f"Failed to download {url}: {e}") from e

    def extract(self, archive: Pathlike, tofolder: Pathlike = ".") -> None:
        """Extract zip archive

        Raises:
            ExtractionError: If extraction fails or file type unsupported
        """
        if not zipfile.is_zipfile(archive):
            raise ExtractionError(f"Unsupported archive type: {archive}")
        try:
            self.log.info("Extracting %s", os.path.basename(str(archive)))
            with zipfile.ZipFile(archive) as f:
                f.extractall(tofolder)
        except (OSError, zipfile.BadZipFile) as e:
            raise ExtractionError(f"Failed to extract {archive}: {e}") from e

    def git_clone(
        self,
        url: str,
        directory: Optional[Pathlike] = None,
        cwd: Pathlike = ".",
        context: Optional[ExecContext] = None,
    ) -> None:
        """git clone a repository source tree from a url

        Raises:
            ValidationError: If URL is invalid
            CommandError: If git clone fails
        """
        if not url.startswith(("https://", "http://", "git://", "ssh://", "git@")):
            raise ValidationError(f"Invalid git URL: {url}")

        _cmds = ["git", "clone", url]
        if directory:
            _cmds.append(str(directory))
        self.cmd(_cmds, cwd=cwd, context=context)

    def makedirs(self, path: Pathlike, mode: int = 511, exist_ok: bool = True) -> None:
        """Recursive directory creation function"""
        self.log.debug("Making directory: %s", path)
        os.makedirs(path, mode, exist_ok)

    def copy(self, src: Pathlike, dst: Pathlike) -> None:
        """copy file or folders -- tries to be behave like `cp -rf`"""
        self.log.info("copy %s to %s", src, dst)
        src, dst = Path(src), Path(dst)
        if src.is_dir():
            shutil.copytree(src, dst)
        else:
            shutil.copy2(src, dst)

    def remove(self, path: Pathlike, silent: bool = False) -> None:
        """Remove file or folder."""

        # handle windows error on read-only files
        def remove_readonly(func: Callable[..., Any], path: str, exc: Any) -> None:
            "Clear the readonly bit and reattempt the removal"
            if func not in (os.unlink, os.rmdir) or getattr(exc, "winerror", None) != 5:
                raise exc
            os.chmod(path, stat.S_IWRITE)
            func(path)

        path = Path(path)
        if path.is_dir():
            if not silent:
                self.log.debug("Removing folder: %s", path)
            if PY_VER_MINOR < 12:
                shutil.rmtree(path, onerror=lambda f, p, e: remove_readonly(f, p, e[1]))
            else:
                shutil.rmtree(path, onexc=remove_readonly)
        else:
            if not silent:
                self.log.debug("Removing file: %s", path)
            try:
                path.unlink()
            except FileNotFoundError:
                if not silent:
                    self.log.debug("File not found: %s", path)


# ----------------------------------------------------------------------------
# main classes


class Workspace(ShellCmd):
    """Holds the workspace directory structure, all derived from one root"""

    def __init__(
        self, root: Optional[Pathlike] = None, platform_info: Optional[PlatformInfo] = None
    ) -> None:
        self._root = Path(root if root is not None else Path.cwd()).resolve()
        self.platform = platform_info or PLATFORM_INFO
        self.log = logging.getLogger(self.__class__.__name__)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} '{self.root}'>"

    @property
    def root(self) -> Path:
        return self._root

    @property
    def third_party(self) -> Path:
        return self.root / "third_party"

    @property
    def depot_tools(self) -> Path:
        return self.third_party / DEPOT_TOOLS

    @property
    def v8(self) -> Path:
        return self.third_party / V8

    @property
    def v8_src(self) -> Path:
        """the gclient checkout of v8"""
        return self.v8 / V8

    @property
    def v8_out(self) -> Path:
        return self.v8_src / "out.gn"

    @property
    def version_file(self) -> Path:
        return self.v8_src / "include" / "v8-version.h"

    @property
    def build(self) -> Path:
        return self.root / "build"

    @property
    def build_includes(self) -> Path:
        return self.build / "include"

    @property
    def host_build(self) -> Path:
        """per-os build output root packaged into releases"""
        return self.build / self.platform.host_os

    @property
    def releases(self) -> Path:
        return self.root / "releases"

    def artifact_dir(self, cell: MatrixCell) -> Path:
        """staging folder of a cell's library"""
        return self.build / cell.host_os / cell.cpu / cell.build_type

    def setup(self) -> None:
        """create the os x cpu x build-type output tree (idempotent)"""
        self.third_party.mkdir(parents=True, exist_ok=True)
        for host_os in HOST_OSES:
            for cpu in CPUS:
                for build_type in BUILD_TYPES:
                    (self.build / host_os / cpu / build_type).mkdir(
                        parents=True, exist_ok=True
                    )


class AbstractBuilder(ShellCmd):
    """Abstract stage class with the skip/run/result logic common to subclasses."""

    name: str

    def __init__(
        self,
        workspace: Workspace,
        context: Optional[ExecContext] = None,
        platform_info: Optional[PlatformInfo] = None,
    ) -> None:
        self.workspace = workspace
        self.platform = platform_info or workspace.platform
        self.context = context or ExecContext.from_environ(
            path_sep=self.platform.path_sep
        )
        self.log = logging.getLogger(self.__class__.__name__)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} '{self.name}'>"

    @property
    def product(self) -> Optional[Path]:
        """path the stage produces"""
        return None

    def is_done(self) -> bool:
        """true if the stage has nothing to do"""
        return False

    def process(self) -> Optional[Path]:
        """main stage process"""
        raise NotImplementedError

    def run(self) -> StageResult:
        """run process unless done, converting build errors into a result"""
        if self.is_done():
            self.log.info("%s already present: skipping", self.name)
            return StageResult.success(self.name, self.product, skipped=True)
        try:
            path = self.process()
        except BuildError as e:
            self.log.critical("%s failed: %s", self.name, e)
            return StageResult.failure(self.name, e)
        return StageResult.success(self.name, path)


class DepotToolsBuilder(AbstractBuilder):
    """installs depot_tools into third_party"""

    name = DEPOT_TOOLS
    repo_url = DEPOT_TOOLS_REPO
    download_url = DEPOT_TOOLS_ZIP_URL

    @property
    def product(self) -> Path:
        return self.workspace.depot_tools

    def is_done(self) -> bool:
        return self.workspace.depot_tools.exists()

    def process(self) -> Path:
        self.log.info("setting up depot tools")
        self.makedirs(self.workspace.third_party)
        if self.platform.uses_archive_bootstrap:
            archive = self.download(self.download_url, tofolder=self.workspace.third_party)
            try:
                self.extract(archive, tofolder=self.workspace.depot_tools)
            finally:
                self.remove(archive)
        else:
            self.git_clone(
                self.repo_url,
                directory=self.workspace.depot_tools,
                cwd=self.workspace.third_party,
                context=self.context,
            )
            # first run of gclient updates depot_tools itself
            self.cmd(["gclient"], cwd=self.workspace.third_party, context=self.context)
        return self.workspace.depot_tools


class V8SourceBuilder(AbstractBuilder):
    """fetches and syncs the v8 source tree"""

    name = "v8-source"

    @property
    def product(self) -> Path:
        return self.workspace.v8_src

    def is_done(self) -> bool:
        return self.workspace.v8_src.exists()

    def process(self) -> Path:
        self.log.info("fetching v8 source")
        self.makedirs(self.workspace.v8)
        self.cmd(["fetch", V8], cwd=self.workspace.v8, context=self.context)
        self.cmd(["gclient", "sync"], cwd=self.workspace.v8_src, context=self.context)
        if not self.platform.is_windows:
            self.cmd(
                ["./build/install-build-deps.sh"],
                cwd=self.workspace.v8_src,
                context=self.context,
            )
        return self.workspace.v8_src

    def revision(self) -> str:
        """commit hash of the checkout, 'unknown' if git cannot tell"""
        try:
            return self.get(
                ["git", "rev-parse", "HEAD"], cwd=self.workspace.v8_src, context=self.context
            )
        except (OSError, subprocess.CalledProcessError) as e:
            self.log.warning("could not determine v8 revision: %s", e)
            return "unknown"


class HeadersBuilder(AbstractBuilder):
    """copies the v8 public headers into build/include"""

    name = "headers"

    @property
    def product(self) -> Path:
        return self.workspace.build_includes

    def is_done(self) -> bool:
        return self.workspace.build_includes.exists()

    def process(self) -> Path:
        src = self.workspace.v8_src / "include"
        if not src.is_dir():
            raise ValidationError(f"v8 headers not found: {src}")
        self.copy(src, self.workspace.build_includes)
        return self.workspace.build_includes


class V8Builder(AbstractBuilder):
    """Builds v8 static libraries, one matrix cell at a time"""

    name = V8

    def __init__(
        self,
        workspace: Workspace,
        gn_args: GnArgs,
        context: Optional[ExecContext] = None,
        platform_info: Optional[PlatformInfo] = None,
        jobs: Optional[int] = None,
        verify_fingerprint: bool = True,
        revision: str = "",
    ) -> None:
        super().__init__(workspace, context, platform_info)
        self.gn_args = gn_args
        self.jobs = jobs
        self.verify_fingerprint = verify_fingerprint
        self.revision = revision

    @property
    def libname(self) -> str:
        return "v8_monolith" if self.gn_args["v8_monolithic"] else V8

    @property
    def target(self) -> str:
        """ninja target"""
        return self.libname

    @property
    def staticlib_name(self) -> str:
        return self.platform.staticlib_name(self.libname)

    def out_path(self, cell: MatrixCell) -> Path:
        return self.workspace.v8_src / cell.out_dir

    def built_artifact(self, cell: MatrixCell) -> Path:
        """library as produced by ninja"""
        return self.out_path(cell) / "obj" / self.staticlib_name

    def fingerprint_file(self, cell: MatrixCell) -> Path:
        artifact = self.built_artifact(cell)
        return artifact.with_name(artifact.name + ".fingerprint")

    def staged_artifact(self, cell: MatrixCell) -> Path:
        """library copied into the workspace layout"""
        return self.workspace.artifact_dir(cell) / self.staticlib_name

    def is_built(self, cell: MatrixCell, args: Optional[GnArgs] = None) -> bool:
        """true if the cell's library exists and was built from args"""
        if not self.built_artifact(cell).exists():
            return False
        if not self.verify_fingerprint:
            return True
        args = args or self.gn_args.for_cell(cell)
        fingerprint_file = self.fingerprint_file(cell)
        if not fingerprint_file.exists():
            self.log.info("%s has no fingerprint: rebuilding", cell)
            return False
        if fingerprint_file.read_text(encoding="utf8").strip() != args.fingerprint(
            self.revision
        ):
            self.log.info("%s was built with other args: rebuilding", cell)
            return False
        return True

    def generate(self, cell: MatrixCell, args: GnArgs) -> None:
        """gn gen"""
        self.log.info("generating %s with --args=\"%s\"", cell.out_dir, args.escaped())
        self.cmd(
            ["gn", "gen", cell.out_dir, f"--args={args.serialize()}"],
            cwd=self.workspace.v8_src,
            context=self.context,
        )

    def compile(self, cell: MatrixCell) -> None:
        """ninja"""
        _cmds = ["ninja", "-C", cell.out_dir]
        if self.jobs:
            _cmds.extend(["-j", str(self.jobs)])
        _cmds.append(self.target)
        self.cmd(_cmds, cwd=self.workspace.v8_src, context=self.context)

    def collect(self, cell: MatrixCell) -> Path:
        """copy the built library into the workspace layout"""
        src = self.built_artifact(cell)
        dst = self.staged_artifact(cell)
        self.makedirs(dst.parent)
        if dst.exists():
            self.remove(dst)
        self.copy(src, dst)
        return dst

    def build_cell(self, cell: MatrixCell) -> Path:
        """build one cell unless already built, then stage its library"""
        args = self.gn_args.for_cell(cell)
        if self.is_built(cell, args):
            self.log.info("%s already built: skipping gn/ninja", cell)
        else:
            self.log.info("building %s", cell)
            self.generate(cell, args)
            self.compile(cell)
            if not self.built_artifact(cell).exists():
                raise BuildError(f"ninja did not produce {self.built_artifact(cell)}")
            self.fingerprint_file(cell).write_text(
                args.fingerprint(self.revision), encoding="utf8"
            )
        return self.collect(cell)

    def run_cell(self, cell: MatrixCell) -> StageResult:
        stage = f"{self.name} {cell}"
        try:
            return StageResult.success(stage, self.build_cell(cell))
        except BuildError as e:
            self.log.critical("%s failed: %s", stage, e)
            return StageResult.failure(stage, e)
        except OSError as e:
            self.log.critical("%s failed: %s", stage, e)
            return StageResult.failure(stage, BuildError(str(e)))

    def process(self) -> Path:
        """build the single cell described by gn_args"""
        cell = MatrixCell(
            self.platform.host_os,
            self.gn_args["target_cpu"],
            "Debug" if self.gn_args["is_debug"] else "Release",
        )
        return self.build_cell(cell)


class VersionReader:
    """Reads the four-part v8 version from v8-version.h"""

    macros = VERSION_MACROS

    def __init__(self, path: Pathlike, strict: bool = False) -> None:
        self.path = Path(path)
        self.strict = strict
        self.log = logging.getLogger(self.__class__.__name__)

    def read_components(self) -> list[str]:
        """major, minor, build, patch; missing macros default to '0'"""
        found: dict[str, str] = {}
        try:
            with open(self.path, encoding="utf8") as f:
                for line in f:
                    tokens = line.split()
                    for macro in self.macros:
                        if macro in tokens:
                            start = line.index(macro) + len(macro) + 1
                            value = line[start:].strip()
                            if value:
                                found[macro] = value
                            break
        except OSError as e:
            raise ValidationError(f"could not read version file {self.path}: {e}") from e

        missing = [m for m in self.macros if m not in found]
        if missing:
            if self.strict:
                raise ValidationError(
                    f"{self.path} is missing {', '.join(missing)}"
                )
            self.log.warning("%s missing %s: using 0", self.path, ", ".join(missing))
        return [found.get(m, "0") for m in self.macros]

    def read(self) -> str:
        return ".".join(self.read_components())


class ReleasePackager(ShellCmd):
    """Zips headers and the host's libraries into releases/"""

    def __init__(
        self,
        workspace: Workspace,
        version: str,
        platform_info: Optional[PlatformInfo] = None,
    ) -> None:
        self.workspace = workspace
        self.version = version
        self.platform = platform_info or workspace.platform
        self.log = logging.getLogger(self.__class__.__name__)

    @property
    def archive_name(self) -> str:
        return f"{V8}-{self.version}-{self.platform.host_os}.zip"

    @property
    def archive_path(self) -> Path:
        return self.workspace.releases / self.archive_name

    def _add_tree(self, archive: zipfile.ZipFile, src: Path, arcroot: str) -> None:
        if not src.is_dir():
            raise PackagingError(f"nothing to package at {src}")
        archive.write(src, arcroot)
        for entry in sorted(src.rglob("*")):
            arcname = Path(arcroot) / entry.relative_to(src)
            archive.write(entry, arcname.as_posix())

    def package(self) -> Path:
        """write the release zip, removing it again if writing fails"""
        self.makedirs(self.workspace.releases)
        path = self.archive_path
        self.log.info("packaging %s", path)
        try:
            with zipfile.ZipFile(path, "w", zipfile.ZIP_DEFLATED) as archive:
                self._add_tree(archive, self.workspace.build_includes, "include")
                self._add_tree(archive, self.workspace.host_build, self.platform.host_os)
        except (OSError, PackagingError) as e:
            self.remove(path, silent=True)
            if isinstance(e, PackagingError):
                raise
            raise PackagingError(f"could not write {path}: {e}") from e
        return path


class Pipeline:
    """Runs the stages in order, stopping at the first failure"""

    def __init__(
        self,
        settings: Settings,
        workspace: Optional[Workspace] = None,
        platform_info: Optional[PlatformInfo] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.settings = settings
        self.platform = platform_info or PLATFORM_INFO
        self.workspace = workspace or Workspace(settings.root, self.platform)
        self.context = settings.exec_context(self.workspace, self.platform, environ)
        self.gn_args = settings.gn_args(self.platform)
        self.results: list[StageResult] = []
        self.log = logging.getLogger(self.__class__.__name__)

    @property
    def cells(self) -> list[MatrixCell]:
        return build_matrix(
            self.settings.build_all,
            self.settings.target_cpu,
            self.settings.is_debug,
            self.platform,
        )

    @property
    def ok(self) -> bool:
        return all(r.ok for r in self.results)

    def _record(self, result: StageResult) -> bool:
        self.results.append(result)
        return result.ok

    def make_builder(self, revision: str = "") -> V8Builder:
        return V8Builder(
            self.workspace,
            self.gn_args,
            context=self.context,
            platform_info=self.platform,
            jobs=self.settings.jobs,
            verify_fingerprint=self.settings.verify_fingerprint,
            revision=revision,
        )

    def package(self) -> StageResult:
        """read the v8 version and zip the release"""
        try:
            version = VersionReader(
                self.workspace.version_file, strict=self.settings.strict_version
            ).read()
            path = ReleasePackager(self.workspace, version, self.platform).package()
        except BuildError as e:
            self.log.critical("release failed: %s", e)
            return StageResult.failure("release", e)
        return StageResult.success("release", path, message=f"v8 {version}: {path}")

    def run(self) -> bool:
        """run all stages; true if every stage succeeded"""
        self.results = []
        self.workspace.setup()

        source = V8SourceBuilder(self.workspace, self.context, self.platform)
        for stage in (
            DepotToolsBuilder(self.workspace, self.context, self.platform),
            source,
            HeadersBuilder(self.workspace, self.context, self.platform),
        ):
            if not self._record(stage.run()):
                return self.report()

        revision = source.revision() if self.settings.verify_fingerprint else ""
        builder = self.make_builder(revision)
        for cell in self.cells:
            if not self._record(builder.run_cell(cell)):
                return self.report()

        if self.settings.build_all:
            self._record(self.package())
        return self.report()

    def report(self) -> bool:
        """log one line per stage; return overall success"""
        for result in self.results:
            if result.ok:
                self.log.info("%s", result)
            else:
                self.log.error("%s", result)
        failed = [r for r in self.results if not r.ok]
        if failed:
            self.log.error("build stopped at %s", failed[0].stage)
        else:
            self.log.info("%d stages completed", len(self.results))
        return not failed

    def dry_run(self) -> None:
        """Display build plan without actually building."""
        ws = self.workspace
        env_overrides = {
            k: v
            for k, v in self.context.env.items()
            if k in ("DEPOT_TOOLS_WIN_TOOLCHAIN", "GYP_MSVS_VERSION")
        }
        lines = [
            "=" * 60,
            "BUILD PLAN (dry run)",
            "=" * 60,
            "",
            "Build Target:",
            f"  Host OS:           {self.platform.host_os}",
            f"  Mode:              {'full matrix' if self.settings.build_all else 'single cell'}",
            f"  Verify fingerprint: {self.settings.verify_fingerprint}",
            "",
            "Directories:",
            f"  depot_tools:       {ws.depot_tools}",
            f"  v8 source:         {ws.v8_src}",
            f"  build:             {ws.build}",
            f"  releases:          {ws.releases}",
            "",
            "GN Args:",
            *(f"  {k}={GnArgs.format_value(v)}" for k, v in self.gn_args.items()),
            "",
            "Matrix Cells:",
            *(f"  {cell}  ->  {cell.out_dir}" for cell in self.cells),
            "",
            "Environment:",
            f"  PATH prepend:      {ws.depot_tools}",
            *(f"  {k}={v}" for k, v in env_overrides.items()),
            "",
            "=" * 60,
            "No changes were made (dry run)",
            "=" * 60,
        ]
        for line in lines:
            print(line)


def resolve_settings(args: argparse.Namespace) -> Settings:
    """settings from --interactive, --config and explicit flags"""
    if args.interactive:
        return prompt_settings()
    data: dict[str, Any] = {}
    if args.config:
        data.update(Settings.from_json(args.config).to_dict())
    flags = {
        "build_all": False if args.single else None,
        "is_debug": True if args.debug else None,
        "target_cpu": args.cpu,
        "use_clang": False if args.no_clang else None,
        "use_local_toolchain": False if args.no_local_toolchain else None,
        "msvs_version": args.msvs_version,
        "monolithic": False if args.no_monolithic else None,
        "jobs": args.jobs,
        "verify_fingerprint": False if args.trust_existing else None,
        "strict_version": True if args.strict_version else None,
        "root": args.root,
    }
    data.update({k: v for k, v in flags.items() if v is not None})
    return Settings.from_dict(data)


def main() -> None:
    """commandline api entrypoint"""

    parser = argparse.ArgumentParser(
        prog="buildv8",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="builds v8 static libraries",
    )
    opt = parser.add_argument

    # fmt: off
    opt("-c", "--config", help="read settings from json file", metavar="FILE")
    opt("-I", "--interactive", help="prompt for settings", action="store_true")
    opt("-s", "--single", help="build a single cpu/build-type cell (no release zip)", action="store_true")
    opt("-d", "--debug", help="debug build (single cell mode)", action="store_true")
    opt("--cpu", choices=CPUS, help="target cpu (single cell mode)")
    opt("--no-clang", help="build with the platform compiler instead of clang", action="store_true")
    opt("--no-local-toolchain", help="windows: use the depot_tools toolchain", action="store_true")
    opt("--msvs-version", choices=MSVS_VERSIONS, help="windows: msvc version")
    opt("--no-monolithic", help="build the v8 target instead of v8_monolith", action="store_true")
    opt("-j", "--jobs", help="# of ninja jobs (default: ninja's choice)", type=int)
    opt("-t", "--trust-existing", help="treat any existing library as built", action="store_true")
    opt("--strict-version", help="fail on an incomplete v8-version.h", action="store_true")
    opt("-r", "--root", help="workspace root (default: current dir)")
    opt("-n", "--dry-run", help="show build plan without building", action="store_true")
    opt("-w", "--write", help="write resolved settings to json file", metavar="FILE")
    opt("-v", "--version", action="version", version=f"%(prog)s {__version__}")
    # fmt: on

    args = parser.parse_args()
    log = logging.getLogger("buildv8")

    try:
        settings = resolve_settings(args)
    except ValidationError as e:
        log.critical("invalid settings: %s", e)
        sys.exit(2)

    if args.write:
        settings.write_json(args.write)
        log.info("settings written to %s", args.write)
        sys.exit(0)

    pipeline = Pipeline(settings)

    if args.dry_run:
        pipeline.dry_run()
        sys.exit(0)

    if not pipeline.run():
        sys.exit(1)
    log.info("Done!")
    sys.exit(0)


if __name__ == "__main__":
    main()
