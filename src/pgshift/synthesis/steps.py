"""
Generated statement text and step scripts.

``StatementText`` is what the engine returns for a table; ``DDLScript``
is an ordered list of named steps used for multi-step changes and dry
runs. Both can be printed, saved and summarized.
"""

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from rich.console import Console
from rich.syntax import Syntax


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatementText:
    """Generated statement text plus metadata.

    Equality and hashing only consider the text, so two syntheses of the
    same definition compare equal regardless of when they ran.
    """

    text: str
    target: str = field(default="", compare=False)
    kind: str = field(default="", compare=False)
    generated_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc), compare=False
    )
    statements: Tuple[str, ...] = field(default=(), compare=False)

    def __str__(self) -> str:
        return self.text


@dataclass(frozen=True)
class DDLStep:
    """One named step of a script.

    ``transactional`` steps run all their statements in one transaction.
    Non-transactional steps run statements one by one, which is required
    for commands such as ``REINDEX ... CONCURRENTLY`` and ``VACUUM``.
    """

    step_number: int
    name: str
    statements: Tuple[str, ...]
    description: str = ""
    transactional: bool = True
    is_parallel: bool = False
    parallel_degree: Optional[int] = None

    @property
    def ddl_statement(self) -> str:
        return ";\n".join(self.statements) + ";"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_number": self.step_number,
            "name": self.name,
            "statements": list(self.statements),
            "description": self.description,
            "transactional": self.transactional,
            "is_parallel": self.is_parallel,
            "parallel_degree": self.parallel_degree,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DDLStep":
        return cls(
            step_number=data["step_number"],
            name=data["name"],
            statements=tuple(data["statements"]),
            description=data.get("description", ""),
            transactional=data.get("transactional", True),
            is_parallel=data.get("is_parallel", False),
            parallel_degree=data.get("parallel_degree"),
        )


@dataclass(frozen=True)
class DDLScript:
    """An ordered, numbered list of steps."""

    title: str
    target: str
    steps: Tuple[DDLStep, ...] = ()

    def __iter__(self) -> Iterator[DDLStep]:
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    @property
    def text(self) -> str:
        blocks = [f"-- {self.title}"]
        for step in self.steps:
            header = f"-- Step {step.step_number}: {step.name}"
            if step.description:
                header += f" ({step.description})"
            body = step.ddl_statement
            if step.transactional and len(step.statements) > 1:
                body = f"BEGIN;\n{body}\nCOMMIT;"
            blocks.append(f"{header}\n{body}")
        return "\n\n".join(blocks) + "\n"

    def __str__(self) -> str:
        return self.text


class ScriptBuilder:
    """Accumulates steps with consecutive numbering."""

    def __init__(self, title: str, target: str):
        self.title = title
        self.target = target
        self._steps: List[DDLStep] = []

    def add(
        self,
        name: str,
        *statements: str,
        description: str = "",
        transactional: bool = True,
        parallel_degree: Optional[int] = None,
    ) -> "ScriptBuilder":
        self._steps.append(
            DDLStep(
                step_number=len(self._steps) + 1,
                name=name,
                statements=tuple(statements),
                description=description,
                transactional=transactional,
                is_parallel=bool(parallel_degree and parallel_degree > 1),
                parallel_degree=parallel_degree,
            )
        )
        return self

    def build(self) -> DDLScript:
        return DDLScript(self.title, self.target, tuple(self._steps))


_DOLLAR_TAG = re.compile(r"\$([A-Za-z_][A-Za-z0-9_]*)?\$")


def split_statements(text: str) -> List[str]:
    """Split script text on top-level semicolons.

    Quoted strings, quoted identifiers, dollar-quoted bodies and comments
    are respected. Comment-only fragments are dropped.
    """
    statements: List[str] = []
    current: List[str] = []
    has_code = False
    i = 0
    length = len(text)

    while i < length:
        ch = text[i]
        nxt = text[i + 1] if i + 1 < length else ""

        if ch == "-" and nxt == "-":
            end = text.find("\n", i)
            end = length if end == -1 else end
            current.append(text[i:end])
            i = end
            continue
        if ch == "/" and nxt == "*":
            end = text.find("*/", i + 2)
            end = length if end == -1 else end + 2
            current.append(text[i:end])
            i = end
            continue
        if ch in ("'", '"'):
            end = i + 1
            while True:
                end = text.find(ch, end)
                if end == -1:
                    end = length
                    break
                if end + 1 < length and text[end + 1] == ch:
                    end += 2
                    continue
                end += 1
                break
            current.append(text[i:end])
            has_code = True
            i = end
            continue
        if ch == "$":
            match = _DOLLAR_TAG.match(text, i)
            if match:
                tag = match.group(0)
                end = text.find(tag, match.end())
                end = length if end == -1 else end + len(tag)
                current.append(text[i:end])
                has_code = True
                i = end
                continue
        if ch == ";":
            if has_code:
                statements.append(_strip_comments("".join(current)))
            current = []
            has_code = False
            i += 1
            continue

        if not ch.isspace():
            has_code = True
        current.append(ch)
        i += 1

    if has_code:
        statements.append(_strip_comments("".join(current)))
    return [s for s in statements if s]


def _strip_comments(statement: str) -> str:
    lines = statement.strip().splitlines()
    while lines and (not lines[0].strip() or lines[0].lstrip().startswith("--")):
        lines.pop(0)
    return "\n".join(lines).strip()


def _as_text(script: Union[str, StatementText, DDLScript]) -> str:
    if isinstance(script, (StatementText, DDLScript)):
        return script.text
    return script


def print_script(
    script: Union[str, StatementText, DDLScript],
    console: Optional[Console] = None,
) -> None:
    """Print statement text with SQL highlighting."""
    console = console or Console()
    console.print(Syntax(_as_text(script), "sql", word_wrap=True))


def save_to_file(
    script: Union[str, StatementText, DDLScript],
    path: Union[str, Path],
    title: Optional[str] = None,
) -> Path:
    """Write statement text to ``path`` under a short header."""
    text = _as_text(script)
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    if title is None:
        title = getattr(script, "title", None) or getattr(script, "target", None) or path.stem
    header = (
        f"-- {title}\n"
        f"-- Generated: {datetime.now(timezone.utc).isoformat(timespec='seconds')}\n"
        f"-- Length: {len(text)} characters\n\n"
    )
    with open(path, "w", encoding="utf-8") as f:
        f.write(header + text)
        if not text.endswith("\n"):
            f.write("\n")

    logger.info(f"Saved {len(text)} characters of DDL to {path}")
    return path


_VERB = re.compile(
    r"^\s*(CREATE\s+(?:OR\s+REPLACE\s+)?(?:UNIQUE\s+)?(?:TEMPORARY\s+|UNLOGGED\s+)?(?:TABLE|INDEX|FUNCTION|TRIGGER|VIEW|SCHEMA)"
    r"|ALTER\s+TABLE|COMMENT\s+ON|INSERT|DROP\s+\w+|REINDEX|ANALYZE|VACUUM|LOCK|BEGIN|COMMIT|\w+)",
    re.IGNORECASE,
)


def summarize(script: Union[str, StatementText, DDLScript]) -> Dict[str, Any]:
    """Count statements by kind."""
    text = _as_text(script)
    statements = split_statements(text)
    kinds: Counter = Counter()
    for statement in statements:
        match = _VERB.match(statement)
        verb = match.group(1) if match else "OTHER"
        verb = re.sub(r"\s+", " ", verb.upper())
        verb = verb.replace("TEMPORARY ", "").replace("UNLOGGED ", "")
        kinds[verb] += 1

    summary = {
        "statements": len(statements),
        "characters": len(text),
        "lines": text.count("\n") + (0 if text.endswith("\n") or not text else 1),
        "by_kind": dict(sorted(kinds.items())),
    }
    if isinstance(script, DDLScript):
        summary["steps"] = len(script.steps)
    return summary
