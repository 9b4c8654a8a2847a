"""
Input pipeline: the gate every byte of untrusted input passes before it
reaches a sandbox.

Order of checks:

1. normalize (`str` -> UTF-8 bytes; None/empty is accepted as empty)
2. hard size ceiling
3. binary payloads (not valid UTF-8) skip text validation
4. dangerous-pattern denylist for the target dialect
5. language handler hook (preprocess / validate / multiline detection)

The denylist is a best-effort second layer; the container boundary is the
real control.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Pattern, Tuple, Union
import re
import threading

from loguru import logger

from .models import PipelineResult, StreamStats
from .policy import SandboxPolicyConfig
from .transcoder import StreamTranscoder, is_valid_utf8, strip_controls
from codejoin_Exec_API.app.core.Metrics.metrics_manager import increment_counter


SHELL_DIALECTS = frozenset({"bash", "shell", "sh"})


class _InfiniteShellLoop:
    """`while true ... do ... done` on a single line, found in one pass per line.

    Only the first `while true` of a line is tried: a later head on the same
    line sees a subset of the text after it.
    """

    _head = re.compile(r"\bwhile[ \t]+(?:true\b|:)")
    _do = re.compile(r"\bdo\b")
    _done = re.compile(r"\bdone\b")

    def search(self, text: str) -> Optional[re.Match]:
        pos, end = 0, len(text)
        while pos < end:
            head = self._head.search(text, pos)
            if head is None:
                return None
            eol = text.find("\n", head.end())
            if eol < 0:
                eol = end
            do = self._do.search(text, head.end(), eol)
            if do is not None and self._done.search(text, do.end(), eol) is not None:
                return head
            pos = eol + 1
        return None


class _RecursiveRootRemoval:
    """`rm` aimed at `/` with both recursive and force flags, in any spelling."""

    _command = re.compile(
        r"(?:^|[;&|`(\s])rm((?:[ \t]+-[-\w]+)+)[ \t]+/(?:\*|\s|;|&|\||$)",
        re.MULTILINE,
    )

    @staticmethod
    def _flags(cluster: str) -> Tuple[bool, bool]:
        recursive = force = False
        for token in cluster.split():
            if token.startswith("--"):
                recursive = recursive or token == "--recursive"
                force = force or token == "--force"
            else:
                recursive = recursive or "r" in token or "R" in token
                force = force or "f" in token
        return recursive, force

    def search(self, text: str) -> Optional[re.Match]:
        for match in self._command.finditer(text):
            if all(self._flags(match.group(1))):
                return match
        return None


Detector = Union[Pattern[str], _InfiniteShellLoop, _RecursiveRootRemoval]

_GENERIC_PATTERNS: List[Tuple[str, Detector]] = [
    ("rm_root", re.compile(r";\s*rm\s+-rf\s+/")),
    ("dd", re.compile(r";\s*dd\s+if=")),
    ("mkfs", re.compile(r";\s*mkfs\.")),
    ("fdisk", re.compile(r";\s*fdisk")),
    ("pipe_sh", re.compile(r"\|\s*sh\s*-c")),
    ("pipe_bash", re.compile(r"\|\s*bash\s*-c")),
    ("pipe_eval", re.compile(r"\|\s*eval\b")),
    ("pipe_exec", re.compile(r"\|\s*exec\b")),
    # fork bombs are short; the bound keeps the scan linear
    ("fork_bomb", re.compile(r":\s*\(\s*\)\s*\{[^}]{0,64}?:\s*\|\s*:")),
    ("fork_call", re.compile(r"\bfork\s*\(")),
    ("infinite_loop", _InfiniteShellLoop()),
]

_SHELL_PATTERNS: List[Tuple[str, Detector]] = [
    ("rm_root", _RecursiveRootRemoval()),
    ("mkfs", re.compile(r"(?:^|[;&|`(\s])mkfs(?:\.\w+)?\b", re.MULTILINE)),
    ("dd", re.compile(r"(?:^|[;&|`(\s])dd\s+if=", re.MULTILINE)),
    ("fdisk", re.compile(r"(?:^|[;&|`(\s])fdisk\b", re.MULTILINE)),
]


@dataclass
class PipelineOptions:
    interactive: bool = False
    # None means "use the configured default"
    enable_validation: Optional[bool] = None
    session_id: Optional[str] = None


Preprocessor = Callable[[str, PipelineOptions], str]
# returns a rejection reason, or None to accept
Validator = Callable[[str, PipelineOptions], Optional[str]]


@dataclass
class LanguageHandler:
    name: str
    prompt_pattern: Optional[Pattern[str]] = None
    multiline_patterns: List[Pattern[str]] = field(default_factory=list)
    special_commands: Dict[str, Pattern[str]] = field(default_factory=dict)
    preprocess: Optional[Preprocessor] = None
    validate: Optional[Validator] = None

    def is_continuation(self, line: str) -> bool:
        return any(p.search(line) for p in self.multiline_patterns)

    def special_command(self, line: str) -> Optional[str]:
        for name, pattern in self.special_commands.items():
            if pattern.search(line):
                return name
        return None

    def info(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "supported": True,
            "features": {
                "multiline": bool(self.multiline_patterns),
                "special_commands": sorted(self.special_commands),
                "preprocessing": self.preprocess is not None,
                "validation": self.validate is not None,
            },
        }


def _python_validate(text: str, options: PipelineOptions) -> Optional[str]:
    if not options.interactive and "\x00" in text:
        return "Python source cannot contain null bytes"
    return None


_JAVA_PUBLIC_CLASS = re.compile(r"public\s+class\s+\w+")


def _java_preprocess(text: str, options: PipelineOptions) -> str:
    # the batch runner always writes Main.java
    return _JAVA_PUBLIC_CLASS.sub("public class Main", text)


def builtin_handlers() -> Dict[str, LanguageHandler]:
    bash = LanguageHandler(
        name="Bash",
        prompt_pattern=re.compile(r"^\$|#"),
        multiline_patterns=[
            re.compile(r"\{\s*$"),
            re.compile(r"\(\s*$"),
            re.compile(r"\bdo\s*$"),
            re.compile(r"\bthen\s*$"),
            re.compile(r"\\\s*$"),
            re.compile(r"\bfunction\s+\w+\s*\(\)"),
        ],
        special_commands={
            "exit": re.compile(r"^exit(\s*$)"),
            "clear": re.compile(r"^clear(\s*$)"),
            "history": re.compile(r"^history(\s*$)"),
            "export": re.compile(r"^export\s+"),
            "alias": re.compile(r"^alias\s+"),
        },
    )
    return {
        "python": LanguageHandler(
            name="Python",
            prompt_pattern=re.compile(r"^>>>|\.\.\."),
            multiline_patterns=[
                re.compile(r":\s*$"),
                re.compile(r"\\\s*$"),
                re.compile(r"^\s*@\w+"),
            ],
            special_commands={
                "help": re.compile(r"^help(\s|\(|$)"),
                "exit": re.compile(r"^(exit|quit)(\s|\(|$)"),
                "import": re.compile(r"^import\s+"),
                "from": re.compile(r"^from\s+.*\s+import\s+"),
            },
            validate=_python_validate,
        ),
        "javascript": LanguageHandler(
            name="JavaScript",
            prompt_pattern=re.compile(r"^>|^\.\.\."),
            multiline_patterns=[
                re.compile(r"\{\s*$"),
                re.compile(r"\(\s*$"),
                re.compile(r"\[\s*$"),
                re.compile(r"=>\s*$"),
            ],
            special_commands={
                "help": re.compile(r"^\.help(\s|$)"),
                "exit": re.compile(r"^\.exit(\s*$)"),
                "clear": re.compile(r"^\.clear(\s*$)"),
                "load": re.compile(r"^\.load\s+"),
                "save": re.compile(r"^\.save\s+"),
            },
        ),
        "java": LanguageHandler(
            name="Java",
            prompt_pattern=re.compile(r"^jshell>|\s*\.\.\."),
            multiline_patterns=[
                re.compile(r"\{\s*$"),
                re.compile(r"\(\s*$"),
            ],
            special_commands={
                "exit": re.compile(r"^/exit(\s*$)"),
                "list": re.compile(r"^/list(\s|$)"),
                "vars": re.compile(r"^/vars(\s*$)"),
                "methods": re.compile(r"^/methods(\s*$)"),
                "types": re.compile(r"^/types(\s*$)"),
                "imports": re.compile(r"^/imports(\s*$)"),
                "reset": re.compile(r"^/reset(\s*$)"),
            },
            preprocess=_java_preprocess,
        ),
        "bash": bash,
        "shell": bash,
        "sh": bash,
    }


def normalize_stdin(stdin: Optional[str | bytes]) -> bytes:
    """CRLF -> LF, and a trailing LF is appended when missing."""
    if stdin is None:
        return b""
    data = stdin.encode("utf-8") if isinstance(stdin, str) else bytes(stdin)
    if not data:
        return b""
    data = data.replace(b"\r\n", b"\n")
    if not data.endswith(b"\n"):
        data += b"\n"
    return data


def _as_bytes(data: object) -> bytes:
    if data is None:
        return b""
    if isinstance(data, bytes):
        return data
    if isinstance(data, (bytearray, memoryview)):
        return bytes(data)
    if isinstance(data, str):
        return data.encode("utf-8")
    return str(data).encode("utf-8")


def _last_line(text: str) -> str:
    lines = [ln for ln in text.replace("\r", "\n").split("\n") if ln.strip()]
    return lines[-1] if lines else ""


class InputPipeline:
    """Normalizes and validates input for one target language."""

    def __init__(
        self,
        cfg: Optional[SandboxPolicyConfig] = None,
        *,
        max_input_bytes: Optional[int] = None,
        enable_validation: Optional[bool] = None,
    ) -> None:
        self.cfg = cfg or SandboxPolicyConfig.from_settings()
        self.max_input_bytes = int(max_input_bytes if max_input_bytes is not None else self.cfg.max_input_bytes)
        self.enable_validation = bool(
            enable_validation if enable_validation is not None else self.cfg.enable_validation
        )
        self._lock = threading.RLock()
        self._handlers: Dict[str, LanguageHandler] = builtin_handlers()

    # -----------------
    # Handler registry
    # -----------------
    def register_handler(self, name: str, handler: LanguageHandler, aliases: Iterable[str] = ()) -> None:
        with self._lock:
            for key in (name, *aliases):
                self._handlers[str(key).strip().lower()] = handler
        logger.info(f"Language handler registered: {name}")

    def unregister_handler(self, name: str) -> bool:
        with self._lock:
            removed = self._handlers.pop(str(name).strip().lower(), None) is not None
        if removed:
            logger.info(f"Language handler removed: {name}")
        return removed

    def get_handler(self, name: str) -> Optional[LanguageHandler]:
        with self._lock:
            return self._handlers.get(str(name or "").strip().lower())

    def handler_info(self, name: str) -> Dict[str, object]:
        handler = self.get_handler(name)
        if handler is None:
            return {"name": name, "supported": False, "features": {}}
        return handler.info()

    def supported_languages(self) -> List[str]:
        with self._lock:
            return sorted(self._handlers)

    # -----------------
    # Processing
    # -----------------
    def _reject(self, language: str, code: str, reason: str, data: bytes, binary: bool, stats: StreamStats) -> PipelineResult:
        try:
            increment_counter(
                "sandbox_validation_rejections_total",
                labels={"language": str(language), "code": code},
            )
        except Exception:
            pass
        return PipelineResult(accepted=False, normalized=data, reason=reason, code=code, binary=binary, stats=stats)

    @staticmethod
    def dangerous_patterns(language: str) -> List[Tuple[str, Detector]]:
        if str(language or "").strip().lower() in SHELL_DIALECTS:
            return _GENERIC_PATTERNS + _SHELL_PATTERNS
        return list(_GENERIC_PATTERNS)

    def scan_dangerous(self, text: str, language: str) -> Optional[str]:
        """Return the label of the first matching denylist pattern, if any."""
        for label, pattern in self.dangerous_patterns(language):
            if pattern.search(text):
                return label
        return None

    def process(self, data: object, language: str, options: Optional[PipelineOptions] = None) -> PipelineResult:
        opts = options or PipelineOptions()
        lang = str(language or "").strip().lower()
        validate = self.enable_validation if opts.enable_validation is None else bool(opts.enable_validation)

        raw = _as_bytes(data)
        stats = StreamStats()
        if not raw:
            return PipelineResult(accepted=True, normalized=b"", stats=stats)

        if len(raw) > self.max_input_bytes:
            logger.warning(
                f"Input rejected: {len(raw)} bytes exceeds limit {self.max_input_bytes} "
                f"(language={lang}, session={opts.session_id})"
            )
            return self._reject(
                lang, "input_too_large",
                f"Input too large ({len(raw)} bytes, limit {self.max_input_bytes})",
                b"", False, stats,
            )

        accounting = StreamTranscoder(label=f"input:{lang}")
        accounting.feed(raw)
        accounting.flush()
        stats = accounting.stats

        binary = not is_valid_utf8(raw)
        if binary:
            logger.debug(f"Binary input ({len(raw)} bytes) bypasses text validation (language={lang})")
            return PipelineResult(accepted=True, normalized=raw, binary=True, stats=stats)

        text = raw.decode("utf-8")
        scan_text = strip_controls(raw).decode("utf-8", errors="replace") if opts.interactive else text

        if validate:
            hit = self.scan_dangerous(scan_text, lang)
            if hit:
                logger.warning(
                    f"Potentially dangerous input detected (pattern={hit}, language={lang}, "
                    f"session={opts.session_id}): {scan_text[:100]!r}"
                )
                return self._reject(
                    lang, "dangerous_pattern",
                    f"Input contains potentially dangerous commands ({hit})",
                    raw, False, stats,
                )

        handler = self.get_handler(lang)
        normalized = raw
        continuation = False
        if handler is not None:
            if handler.preprocess is not None and not opts.interactive:
                text = handler.preprocess(text, opts)
                normalized = text.encode("utf-8")
            if validate and handler.validate is not None:
                reason = handler.validate(text if not opts.interactive else scan_text, opts)
                if reason:
                    return self._reject(lang, "language_rejected", reason, normalized, False, stats)
            if opts.interactive:
                continuation = handler.is_continuation(_last_line(scan_text))

        return PipelineResult(
            accepted=True,
            normalized=normalized,
            binary=False,
            continuation=continuation,
            stats=stats,
        )

    def validate_code(self, code: Optional[str | bytes], language: str) -> PipelineResult:
        return self.process(code, language, PipelineOptions(interactive=False))

    def validate_stdin(self, stdin: Optional[str | bytes], language: str) -> PipelineResult:
        """Stdin is only size-checked, then normalized."""
        raw = _as_bytes(stdin)
        if len(raw) > self.max_input_bytes:
            return self._reject(
                str(language or "").strip().lower(), "input_too_large",
                f"Stdin too large ({len(raw)} bytes, limit {self.max_input_bytes})",
                b"", False, StreamStats(),
            )
        return PipelineResult(accepted=True, normalized=normalize_stdin(raw), binary=not is_valid_utf8(raw))
