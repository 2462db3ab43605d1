"""工作区管理器：把源码树快照复制到环境内的项目根目录。"""

from __future__ import annotations

import hashlib
import logging
import shutil
from pathlib import Path

from dotchess_env.domain.models import SourceSnapshot

logger = logging.getLogger(__name__)

# 构建输出与版本库元数据不属于源码快照。
SNAPSHOT_IGNORED = frozenset({"target", ".git"})


class WorkspaceError(RuntimeError):
    """源码快照无法落盘：源目录缺失或与项目根目录互相嵌套。"""


def sha256_file(path: Path) -> str:
    """流式计算文件 SHA-256 摘要。"""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _iter_source_files(root: Path) -> list[Path]:
    files: list[Path] = []
    for path in sorted(root.rglob("*")):
        relative = path.relative_to(root)
        if relative.parts and relative.parts[0] in SNAPSHOT_IGNORED:
            continue
        if path.is_file():
            files.append(path)
    return files


def tree_digest(root: Path) -> tuple[str, int]:
    """按相对路径排序计算目录树摘要，返回 (摘要, 文件数)。"""
    digest = hashlib.sha256()
    files = _iter_source_files(root)
    for path in files:
        digest.update(path.relative_to(root).as_posix().encode("utf-8"))
        digest.update(b"\0")
        digest.update(sha256_file(path).encode("ascii"))
        digest.update(b"\n")
    return digest.hexdigest(), len(files)


class WorkspaceManager:
    """项目根目录管理器，负责源码快照的落盘。"""

    def __init__(self, project_root: Path) -> None:
        self._project_root = project_root

    @property
    def project_root(self) -> Path:
        return self._project_root

    def materialize(self, source_root: Path) -> SourceSnapshot:
        """把源码树整体复制到项目根目录，返回快照描述。

        复制完成后构建只读取项目根目录，源目录之后的改动不影响本次构建。
        源目录与项目根目录相同时（开发容器直接挂载）不做复制。
        """
        source = source_root.resolve()
        if not source.is_dir():
            raise WorkspaceError(f"source tree not found: {source_root}")
        root = self._project_root.resolve()
        # 两者嵌套时，清理项目根目录会删掉源码本身，或把快照复制进自身。
        if source in root.parents:
            raise WorkspaceError(f"project root {root} must not live inside the source tree {source}")
        if root in source.parents:
            raise WorkspaceError(f"source tree {source} must not live inside the project root {root}")

        if source == root:
            logger.info(
                "source already at project root, skipping copy",
                extra={"event": "workspace.materialize.skipped", "op": str(root)},
            )
        else:
            root.mkdir(parents=True, exist_ok=True)
            self._clear_sources(root)
            shutil.copytree(
                source,
                root,
                dirs_exist_ok=True,
                ignore=lambda _dir, names: [name for name in names if name in SNAPSHOT_IGNORED],
            )

        digest, file_count = tree_digest(root)
        logger.info(
            "source snapshot materialized",
            extra={
                "event": "workspace.materialize.succeeded",
                "op": str(root),
                "payload_preview": {"source": str(source), "digest": digest, "files": file_count},
            },
        )
        return SourceSnapshot(root=root, digest=digest, file_count=file_count)

    @staticmethod
    def _clear_sources(root: Path) -> None:
        # 保留 target/ 以复用增量编译缓存，其余旧文件全部清掉，避免残留文件混入快照。
        for child in root.iterdir():
            if child.name in SNAPSHOT_IGNORED:
                continue
            if child.is_dir() and not child.is_symlink():
                shutil.rmtree(child)
            else:
                child.unlink()
