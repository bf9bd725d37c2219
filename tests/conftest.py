from __future__ import annotations

import hashlib
import io
import os
import sys
import tarfile
from pathlib import Path

import httpx
import pytest

_REPO = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(_REPO / "tools"))

from patch_settings import PatchConfig, UpstreamSettings  # noqa: E402
from upstream_client import GitHubClient  # noqa: E402

KERNEL = "6.12.54-Unraid"
DRIVER = "590.48.01"
PACKAGE_NAME = f"nvidia-{DRIVER}-{KERNEL}-1.txz"
MODULE_DIR = f"lib/modules/{KERNEL}/kernel/drivers/video"
STOCK_MODULES = {
    "nvidia.ko": b"stock nvidia",
    "nvidia-uvm.ko": b"stock nvidia-uvm",
    "nvidia-drm.ko": b"stock nvidia-drm",
}


def _add_bytes(tf, name, data, mode=0o644):
    info = tarfile.TarInfo(name)
    info.size = len(data)
    info.mode = mode
    tf.addfile(info, io.BytesIO(data))


def _add_dir(tf, name):
    info = tarfile.TarInfo(name)
    info.type = tarfile.DIRTYPE
    info.mode = 0o755
    tf.addfile(info)


def make_package(path: Path, kernel: str = KERNEL, modules: dict | None = None) -> Path:
    """Write a Slackware-style driver package with *modules* at *path*."""
    modules = STOCK_MODULES if modules is None else modules
    module_dir = f"lib/modules/{kernel}/kernel/drivers/video"
    path.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(path, "w:xz") as tf:
        _add_dir(tf, "install")
        _add_bytes(tf, "install/slack-desc", b"nvidia: nvidia driver package\n")
        _add_dir(tf, "usr/bin")
        _add_bytes(tf, "usr/bin/nvidia-smi", b"#!/bin/sh\n", mode=0o755)
        parts = module_dir.split("/")
        for i in range(1, len(parts) + 1):
            _add_dir(tf, "/".join(parts[:i]))
        for name, data in modules.items():
            _add_bytes(tf, f"{module_dir}/{name}", data)
    return path


def make_source_tarball(version: str, top: str | None = None) -> bytes:
    """A GitHub-style source archive with one wrapper directory."""
    top = top or f"open-gpu-kernel-modules-{version}-p2p"
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tf:
        _add_dir(tf, top)
        _add_bytes(tf, f"{top}/version.mk", f"NVIDIA_VERSION = {version}\n".encode())
        _add_bytes(tf, f"{top}/Makefile", b"modules:\n\t@true\n")
        _add_dir(tf, f"{top}/kernel-open")
        _add_bytes(tf, f"{top}/kernel-open/Kbuild", b"# kbuild\n")
    return buf.getvalue()


def make_source_tree(path: Path, version: str = DRIVER) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    (path / "version.mk").write_text(f"NVIDIA_VERSION = {version}\n")
    (path / "kernel-open").mkdir(exist_ok=True)
    return path


def read_member(package: Path, name: str) -> bytes:
    with tarfile.open(package, "r:xz") as tf:
        for member in tf.getmembers():
            if os.path.normpath(member.name) == name:
                return tf.extractfile(member).read()
    raise KeyError(name)


def md5(path: Path) -> str:
    return hashlib.md5(path.read_bytes()).hexdigest()


def snapshot(root: Path) -> dict[str, bytes]:
    """Relative path -> content for every file under *root*."""
    return {str(p.relative_to(root)): p.read_bytes()
            for p in sorted(root.rglob("*")) if p.is_file()}


@pytest.fixture
def plugin_dir(tmp_path: Path) -> Path:
    root = tmp_path / "plugin"
    package = make_package(root / "6.12.54" / PACKAGE_NAME)
    (package.parent / (package.name + ".md5")).write_text(md5(package) + "\n")
    return root


@pytest.fixture
def package(plugin_dir: Path) -> Path:
    return plugin_dir / "6.12.54" / PACKAGE_NAME


@pytest.fixture
def work_dir(tmp_path: Path) -> Path:
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def make_config(plugin_dir: Path, work_dir: Path):
    """PatchConfig factory pointed at the fake plugin tree."""
    def _make(**overrides) -> PatchConfig:
        options = dict(kernel_version=KERNEL, plugin_dir=plugin_dir, work_dir=work_dir)
        options.update(overrides)
        return PatchConfig(**options)
    return _make


@pytest.fixture
def fake_bin(tmp_path: Path, monkeypatch):
    """Create executable shell scripts in a bin dir prepended to PATH.

    fake_bin("make", "echo hi") -> path to the script.
    fake_bin.isolate() makes that dir the whole PATH.
    """
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")

    def _make(name: str, body: str = "exit 0") -> Path:
        script = bin_dir / name
        script.write_text(f"#!/bin/sh\n{body}\n")
        script.chmod(0o755)
        return script

    _make.dir = bin_dir
    _make.isolate = lambda: monkeypatch.setenv("PATH", str(bin_dir))
    return _make


class FakeGitHub:
    """In-memory GitHub: branch listing pages and source archives."""

    def __init__(self, branches=(), archives=None, per_page=100):
        self.branches = list(branches)
        self.archives = dict(archives or {})
        self.per_page = per_page
        self.requests: list[httpx.Request] = []
        self.rate_limited = False
        self.empty = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.url.host == "api.github.com" and path.endswith("/branches"):
            if self.rate_limited:
                return httpx.Response(403, json={
                    "message": "API rate limit exceeded for 203.0.113.9."})
            if self.empty:
                return httpx.Response(200, content=b"")
            page = int(request.url.params.get("page", "1"))
            start = (page - 1) * self.per_page
            chunk = self.branches[start:start + self.per_page]
            headers = {}
            if start + self.per_page < len(self.branches):
                nxt = request.url.copy_merge_params({"page": str(page + 1)})
                headers["Link"] = f'<{nxt}>; rel="next"'
            return httpx.Response(200, json=[{"name": n} for n in chunk], headers=headers)
        if request.url.host == "github.com" and path in self.archives:
            body = self.archives[path]
            if request.method == "HEAD":
                return httpx.Response(200, headers={"content-length": str(len(body))})
            return httpx.Response(200, content=body)
        return httpx.Response(404, text="Not Found")

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def client(self, settings: UpstreamSettings | None = None) -> GitHubClient:
        return GitHubClient(settings or UpstreamSettings(per_page=self.per_page),
                            transport=self.transport)

    def paths(self, method: str = "GET") -> list[str]:
        return [r.url.path for r in self.requests if r.method == method]


@pytest.fixture
def github(monkeypatch) -> FakeGitHub:
    """FakeGitHub wired into the CLI in place of the real client."""
    fake = FakeGitHub()
    import patch_driver
    monkeypatch.setattr(patch_driver, "GitHubClient",
                        lambda settings: GitHubClient(settings, transport=fake.transport))
    return fake


P2P_ARCHIVE = f"/aikitoria/open-gpu-kernel-modules/archive/refs/heads/{DRIVER}-p2p.tar.gz"
TAG_ARCHIVE = f"/NVIDIA/open-gpu-kernel-modules/archive/refs/tags/{DRIVER}.tar.gz"
