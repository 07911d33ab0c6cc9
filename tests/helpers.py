"""Builders shared by the test modules."""

import gzip
import hashlib
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from pkgresolve.models import ModuleStream, PackageRecord
from pkgresolve.trust import armor_signature


def make_package(
    name: str,
    version: str = "1.0",
    release: str = "1",
    arch: str = "x86_64",
    repo_id: str = "base",
    epoch: int = 0,
    **relations,
) -> PackageRecord:
    """A record with relation fields given as lists, e.g. ``requires=["libfoo >= 1"]``."""
    return PackageRecord(
        name=name,
        epoch=epoch,
        version=version,
        release=release,
        arch=arch,
        repo_id=repo_id,
        **{key: tuple(value) for key, value in relations.items()},
    )


def make_stream(name: str, stream: str, repo_id: str = "base", **fields) -> ModuleStream:
    fields.setdefault("version", 1)
    fields.setdefault("context", "c0ffee")
    fields.setdefault("arch", "x86_64")
    for key in ("requires", "artifacts"):
        if key in fields:
            fields[key] = tuple(fields[key])
    if "profiles" in fields:
        fields["profiles"] = {key: tuple(value) for key, value in fields["profiles"].items()}
    return ModuleStream(name=name, stream=stream, repo_id=repo_id, **fields)


def public_pem(private_key) -> bytes:
    return private_key.public_key().public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
    )


def render_paragraphs(entries: list[dict[str, str]]) -> str:
    blocks = []
    for entry in entries:
        lines = []
        for key, value in entry.items():
            if "\n" in value:
                lines.append(f"{key}:")
                lines.extend(f" {line}" for line in value.splitlines())
            else:
                lines.append(f"{key}: {value}")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks) + "\n"


class RepoBuilder:
    """Writes a repository tree under ``root``: ``repodata/{repomd,repomd.asc,primary,...}``.

    Entries use the index field names directly, e.g.
    ``add_package("bash", "5.2", Requires="glibc")``.
    """

    def __init__(self, root: Path, signing_key: ed25519.Ed25519PrivateKey | None = None):
        self.root = root
        self.signing_key = signing_key
        self.packages: list[dict[str, str]] = []
        self.modules: list[dict[str, str]] = []
        self.advisories: list[dict[str, str]] = []

    @property
    def url(self) -> str:
        return self.root.as_uri()

    @property
    def repodata(self) -> Path:
        return self.root / "repodata"

    def add_package(self, name: str, version: str = "1.0", release: str = "1", arch: str = "x86_64", **fields):
        self.packages.append({"Package": name, "Version": version, "Release": release, "Architecture": arch, **fields})
        return self

    def add_module(self, name: str, stream: str, **fields):
        self.modules.append({"Module": name, "Stream": stream, **fields})
        return self

    def add_advisory(self, advisory_id: str, **fields):
        self.advisories.append({"Id": advisory_id, **fields})
        return self

    def publish(self, *, sign: bool = True, compress_primary: bool = False) -> str:
        """Write every index plus a repomd listing their checksums; returns the base URL."""
        self.repodata.mkdir(parents=True, exist_ok=True)
        for stale in self.repodata.iterdir():
            stale.unlink()

        files: dict[str, bytes] = {}
        primary = render_paragraphs(self.packages).encode()
        if compress_primary:
            files["primary.gz"] = gzip.compress(primary)
        else:
            files["primary"] = primary
        if self.modules:
            files["modules"] = render_paragraphs(self.modules).encode()
        if self.advisories:
            files["updateinfo"] = render_paragraphs(self.advisories).encode()

        lines = ["Origin: pkgresolve-tests", "SHA256:"]
        for name, data in sorted(files.items()):
            (self.repodata / name).write_bytes(data)
            lines.append(f" {hashlib.sha256(data).hexdigest()} {len(data)} {name}")
        repomd = ("\n".join(lines) + "\n").encode()
        (self.repodata / "repomd").write_bytes(repomd)

        if sign and self.signing_key is not None:
            (self.repodata / "repomd.asc").write_text(armor_signature(self.signing_key.sign(repomd)))
        return self.url
