"""Map changed source files to the business modules they belong to."""

import asyncio
import functools
import logging
import re
from collections.abc import Iterable, Sequence
from pathlib import Path

from aiworkflow.scoped_e2e.models.module_mapping import ModuleDefinition, ModuleMapping

logger = logging.getLogger(__name__)

_DIFF_METADATA_PREFIXES = (
    "---",
    "+++",
    "@@",
    "index ",
    "new file",
    "deleted file",
    "similarity",
    "rename",
    "Binary",
)


def analyze_changed_files(
    mapping: ModuleMapping, changed_files: Sequence[str] | None
) -> list[str]:
    """Return ids of the modules touched by ``changed_files``.

    Args:
        mapping: Module mapping table
        changed_files: Changed paths relative to the repository root

    Returns:
        Unique module ids, ordered by first match. Empty when nothing
        changed or nothing matched.

    """
    if not changed_files:
        logger.info("No changed files, nothing to analyze")
        return []

    logger.info(f"Analyzing {len(changed_files)} changed files")

    affected: dict[str, None] = {}
    for file_path in changed_files:
        normalized = normalize_path(file_path)
        for module in mapping.modules:
            if module.id not in affected and _matches_module(normalized, module):
                affected[module.id] = None
                logger.debug(f"File '{normalized}' matches module '{module.id}'")

    if affected:
        logger.info(f"Affected modules: {list(affected)}")
    else:
        logger.info("Changed files matched no module, smoke test will run")

    return list(affected)


def matches_any_pattern(
    changed_files: Iterable[str], patterns: Iterable[str]
) -> bool:
    """Return True if any changed file matches any of the glob patterns."""
    pattern_list = list(patterns)
    return any(
        matches_glob(normalize_path(file_path), pattern)
        for file_path in changed_files
        for pattern in pattern_list
    )


def normalize_path(file_path: str) -> str:
    """Use forward slashes and drop a leading slash (webhook paths have one)."""
    return file_path.replace("\\", "/").lstrip("/")


def matches_glob(file_path: str, pattern: str) -> bool:
    """Match a normalized path against a glob pattern.

    ``*`` matches within one path segment, ``**`` across segments and
    ``**/`` may match no directory at all. A leading slash on the pattern
    is ignored, as on the path. A malformed pattern is matched with a
    literal translation instead of failing.
    """
    pattern = pattern.lstrip("/")
    try:
        return _compile_glob(pattern).fullmatch(file_path) is not None
    except ValueError:
        return _fallback_match(file_path, pattern)


def critical_module_ids(mapping: ModuleMapping) -> list[str]:
    """Return ids of modules flagged critical, in declaration order."""
    return [module.id for module in mapping.modules if module.critical]


def all_module_ids(mapping: ModuleMapping) -> list[str]:
    """Return every module id, in declaration order."""
    return [module.id for module in mapping.modules]


def parse_git_diff_output(diff_output: str | None) -> list[str]:
    """Extract changed file paths from ``git diff`` output.

    Understands full diffs (``diff --git a/x b/x`` headers) as well as
    ``--name-only`` and ``--name-status`` listings.

    Args:
        diff_output: Raw git diff output

    Returns:
        Unique paths in the order they appear

    """
    if not diff_output or not diff_output.strip():
        return []

    files: dict[str, None] = {}
    for line in diff_output.splitlines():
        stripped = line.strip()
        if not stripped:
            continue

        if stripped.startswith("diff --git"):
            parts = stripped.split(" ")
            if len(parts) >= 4 and parts[3].startswith("b/"):
                files[parts[3][2:]] = None
            continue

        if stripped.startswith(_DIFF_METADATA_PREFIXES):
            continue

        if len(stripped) > 2 and "\t" in stripped:
            # name-status: "M\tpath" or "R100\told\tnew"
            files[stripped.split("\t")[-1]] = None
        elif "/" in stripped and " " not in stripped:
            files[stripped] = None

    logger.info(f"Parsed {len(files)} changed files from git diff output")
    return list(files)


async def detect_changed_files(
    repo_path: Path, base_ref: str, head_ref: str
) -> list[str]:
    """List files changed between two git refs of a local repository.

    Args:
        repo_path: Path to the application repository
        base_ref: Base git reference (e.g., "origin/main")
        head_ref: Head git reference (e.g., "HEAD")

    Returns:
        Changed file paths relative to the repository root

    Raises:
        RuntimeError: If a ref cannot be resolved or git diff fails

    """
    logger.info(
        "Detecting changed files",
        extra={
            "repo_path": str(repo_path),
            "base_ref": base_ref,
            "head_ref": head_ref,
        },
    )

    resolved_base = await _resolve_ref(repo_path, base_ref)
    resolved_head = await _resolve_ref(repo_path, head_ref)

    logger.info(f"Running: git diff --name-only {resolved_base} {resolved_head}")

    process = await asyncio.create_subprocess_exec(
        "git",
        "diff",
        "--name-only",
        resolved_base,
        resolved_head,
        cwd=repo_path,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await process.communicate()

    if process.returncode != 0:
        error_msg = stderr.decode().strip()
        logger.error(f"Git diff command failed with exit code {process.returncode}")
        raise RuntimeError(f"Git command failed: {error_msg}")

    files = parse_git_diff_output(stdout.decode())
    logger.info(f"Found {len(files)} changed files")
    return files


async def _resolve_ref(repo_path: Path, ref: str) -> str:
    """Resolve a git reference, trying the origin/ prefix if needed.

    CI checkouts often only have origin/main, not main.

    Raises:
        RuntimeError: If the reference cannot be resolved

    """
    candidates = [ref]
    if not ref.startswith(("origin/", "refs/")):
        candidates.append(f"origin/{ref}")

    error_msg = ""
    for candidate in candidates:
        process = await asyncio.create_subprocess_exec(
            "git",
            "rev-parse",
            "--verify",
            candidate,
            cwd=repo_path,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()
        if process.returncode == 0:
            logger.info(f"Resolved ref '{ref}' as '{candidate}' to {stdout.decode().strip()}")
            return candidate
        error_msg = stderr.decode().strip()

    raise RuntimeError(
        f"Cannot resolve git ref '{ref}'. Tried {', '.join(candidates)}. "
        f"Error: {error_msg}"
    )


def _matches_module(file_path: str, module: ModuleDefinition) -> bool:
    return any(matches_glob(file_path, pattern) for pattern in module.file_patterns)


@functools.lru_cache(maxsize=512)
def _compile_glob(pattern: str) -> re.Pattern[str]:
    """Translate a glob into a regex.

    Raises:
        ValueError: If the pattern has an unclosed ``[`` or ``{``

    """
    out: list[str] = []
    i, n = 0, len(pattern)
    brace_depth = 0

    while i < n:
        char = pattern[i]
        if pattern.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("/**", i) and i + 3 == n:
            out.append("(?:/.*)?")
            i += 3
        elif pattern.startswith("**", i):
            out.append(".*")
            i += 2
        elif char == "*":
            out.append("[^/]*")
            i += 1
        elif char == "?":
            out.append("[^/]")
            i += 1
        elif char == "[":
            end = pattern.find("]", i + 2)
            if end == -1:
                raise ValueError(f"Unclosed '[' in glob pattern: {pattern}")
            body = pattern[i + 1 : end]
            if body.startswith("!"):
                body = "^" + body[1:]
            out.append(f"[{body.replace(chr(92), chr(92) * 2)}]")
            i = end + 1
        elif char == "{":
            brace_depth += 1
            out.append("(?:")
            i += 1
        elif char == "}" and brace_depth:
            brace_depth -= 1
            out.append(")")
            i += 1
        elif char == "," and brace_depth:
            out.append("|")
            i += 1
        else:
            out.append(re.escape(char))
            i += 1

    if brace_depth:
        raise ValueError(f"Unclosed '{{' in glob pattern: {pattern}")

    try:
        return re.compile("".join(out))
    except re.error as e:
        raise ValueError(f"Invalid glob pattern {pattern}: {e}") from e


def _fallback_match(file_path: str, pattern: str) -> bool:
    """Literal translation used when a glob cannot be compiled.

    Only ``*`` and ``**`` keep their meaning; the pattern may match a
    suffix of the path.
    """
    regex = (
        re.escape(pattern)
        .replace(re.escape("**/"), "(?:.+/)?")
        .replace(re.escape("/**"), "(?:/.*)?")
        .replace(re.escape("**"), ".*")
        .replace(re.escape("*"), "[^/]*")
    )
    try:
        return (
            re.fullmatch(regex, file_path) is not None
            or re.fullmatch(".*" + regex, file_path) is not None
        )
    except re.error:
        logger.warning(f"Glob match failed: pattern='{pattern}', file='{file_path}'")
        return False
