"""Variable and template resolution for converge.

Task arguments may contain ``{{ expr }}`` placeholders and ``when`` /
``changed_when`` / ``failed_when`` hold bare boolean expressions. Both are
evaluated by a sandboxed, immutable Jinja2 environment so evaluation is
pure: templates can read the scope but cannot mutate it or reach unsafe
attributes. The only side channel is ``lookup(kind, arg)``, whose ``file``
kind reads a local file.

Undefined names are represented by a distinguishable undefined value that
can be chained (``a.b.c``) and tested (``a is defined``, ``a | default(1)``)
but fails as soon as it is used. Interpolating such a value raises
``TemplateError``; a condition that uses one evaluates to False.
"""

import json
import logging
import os
import posixpath
import re
import shlex
from pathlib import Path
from typing import Any, Callable, Mapping

import yaml
from jinja2 import ChainableUndefined, TemplateSyntaxError, Undefined, UndefinedError
from jinja2.exceptions import SecurityError
from jinja2.sandbox import ImmutableSandboxedEnvironment

from .backup import entries_from_files, select_latest
from .exceptions import LookupFailedError, TemplateError

logger = logging.getLogger(__name__)

_SINGLE_EXPRESSION = re.compile(r"^\s*\{\{(?P<expr>.*?)\}\}\s*$", re.DOTALL)

FALSE_STRINGS = {"", "false", "no", "off", "0", "none", "n", "f"}


class StrictChainableUndefined(ChainableUndefined):
    """Undefined that tolerates attribute chains but fails on any use."""

    __slots__ = ()

    __iter__ = __str__ = __len__ = __eq__ = __ne__ = __bool__ = __hash__ = __contains__ = (
        Undefined._fail_with_undefined_error
    )


def is_template(value: Any) -> bool:
    """Whether a string contains template markup."""
    return isinstance(value, str) and ("{{" in value or "{%" in value)


def _contains_template(value: Any) -> bool:
    if isinstance(value, dict):
        return any(_contains_template(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(_contains_template(v) for v in value)
    return is_template(value)


def to_bool(value: Any) -> bool:
    """Interpret a variable as a boolean the way playbooks expect."""
    if isinstance(value, str):
        return value.strip().lower() not in FALSE_STRINGS
    return bool(value)


def _regex_replace(value: Any, pattern: str, replacement: str = "", ignorecase: bool = False) -> str:
    flags = re.IGNORECASE if ignorecase else 0
    return re.sub(pattern, replacement, str(value), flags=flags)


def _to_yaml(value: Any) -> str:
    return yaml.safe_dump(value, default_flow_style=False, sort_keys=False)


def _latest(files: list[dict[str, Any]], pattern: str = "*", sort_by: str = "name") -> str:
    """Path of the newest entry of find output whose name matches pattern."""
    return select_latest(entries_from_files(files, sort_by), pattern).path


FILTERS: dict[str, Callable[..., Any]] = {
    "bool": to_bool,
    "basename": lambda p: posixpath.basename(str(p)),
    "dirname": lambda p: posixpath.dirname(str(p)),
    "regex_replace": _regex_replace,
    "to_json": lambda v: json.dumps(v, sort_keys=True),
    "from_json": lambda v: json.loads(v),
    "to_yaml": _to_yaml,
    "quote": lambda v: shlex.quote(str(v)),
    "latest": _latest,
}


class Templar:
    """Evaluates templates and conditions against a variable scope.

    Attributes:
        base_dir: Directory relative ``lookup('file', ...)`` paths resolve against

    Example:
        >>> templar = Templar()
        >>> templar.template("{{ pkg }}-{{ ver }}", {"pkg": "nginx", "ver": 1})
        'nginx-1'
        >>> templar.template("{{ ports }}", {"ports": [80, 443]})
        [80, 443]
        >>> templar.evaluate("missing == 'x'", {})
        False
    """

    def __init__(self, base_dir: str | Path | None = None) -> None:
        self.base_dir = Path(base_dir) if base_dir else Path.cwd()
        self.env = ImmutableSandboxedEnvironment(
            undefined=StrictChainableUndefined,
            keep_trailing_newline=True,
        )
        self.env.filters.update(FILTERS)
        self.env.globals["lookup"] = self.lookup
        self._expressions: dict[str, Callable[..., Any]] = {}

    def lookup(self, kind: str, arg: str) -> str:
        """Resolve ``lookup(kind, arg)``.

        Kinds:
            file: contents of a local file (one trailing newline stripped)
            env: value of a local environment variable ('' when unset)

        Raises:
            LookupFailedError: Unknown kind, or unreadable file
        """
        if kind == "file":
            path = Path(arg)
            if not path.is_absolute():
                path = self.base_dir / path
            try:
                content = path.read_text()
            except (OSError, UnicodeDecodeError) as e:
                raise LookupFailedError(kind, arg, str(e)) from e
            return content[:-1] if content.endswith("\n") else content
        if kind == "env":
            return os.environ.get(arg, "")
        raise LookupFailedError(kind, arg, "unknown lookup kind")

    def _compile_expression(self, source: str) -> Callable[..., Any]:
        compiled = self._expressions.get(source)
        if compiled is None:
            try:
                compiled = self.env.compile_expression(source, undefined_to_none=False)
            except TemplateSyntaxError as e:
                raise TemplateError(f"Syntax error in expression '{source}': {e.message}") from e
            self._expressions[source] = compiled
        return compiled

    def template(self, value: Any, scope: Mapping[str, Any]) -> Any:
        """Resolve placeholders in a value, recursing into lists and mappings.

        A string that is a single ``{{ expr }}`` yields the native value of
        the expression; any other string with markup renders to a string.

        Raises:
            TemplateError: On syntax errors or undefined references
        """
        if isinstance(value, str):
            return self._template_string(value, scope)
        if isinstance(value, dict):
            return {k: self.template(v, scope) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self.template(v, scope) for v in value]
        return value

    def _template_string(self, text: str, scope: Mapping[str, Any]) -> Any:
        if not is_template(text):
            return text

        single = _SINGLE_EXPRESSION.match(text)
        try:
            if single and "{{" not in single.group("expr") and "}}" not in single.group("expr"):
                result = self._compile_expression(single.group("expr").strip())(**scope)
                if isinstance(result, Undefined):
                    result._fail_with_undefined_error()
                return result
            return self.env.from_string(text).render(**scope)
        except UndefinedError as e:
            raise TemplateError(f"Undefined variable in '{text}': {e.message}") from e
        except TemplateSyntaxError as e:
            raise TemplateError(f"Syntax error in '{text}': {e.message}") from e
        except SecurityError as e:
            raise TemplateError(f"Unsafe operation in '{text}': {e}") from e
        except (TypeError, ValueError, ArithmeticError) as e:
            raise TemplateError(f"Cannot render '{text}': {e}") from e

    def resolve_variables(
        self, variables: Mapping[str, Any], context: Mapping[str, Any] | None = None
    ) -> dict[str, Any]:
        """Resolve variable values that reference other variables.

        Plain values are taken as-is. Templated values are rendered against
        ``context`` plus every variable resolved so far, repeatedly, until no
        more progress is made, so definition order does not matter. A value
        that still cannot be resolved (undefined reference, cycle) is bound
        to an undefined value: using it fails, testing it is False.

        Returns:
            ``context`` overlaid with the resolved variables
        """
        resolved = dict(context or {})
        pending: dict[str, Any] = {}
        for name, value in variables.items():
            if _contains_template(value):
                pending[name] = value
                resolved.pop(name, None)
            else:
                resolved[name] = value

        while pending:
            progressed = False
            for name in list(pending):
                try:
                    resolved[name] = self.template(pending[name], resolved)
                except TemplateError:
                    continue
                del pending[name]
                progressed = True
            if not progressed:
                break

        for name, value in pending.items():
            logger.debug(f"Variable '{name}' left unresolved: {value!r}")
            resolved[name] = self.env.undefined(
                hint=f"'{name}' could not be resolved from {value!r}", name=name
            )
        return resolved

    def evaluate(self, expression: Any, scope: Mapping[str, Any]) -> bool:
        """Evaluate a condition.

        Accepts a bool, a bare expression string (optionally wrapped in
        ``{{ }}``), or a list of expressions that must all hold. A condition
        that touches an undefined name evaluates to False instead of raising.

        Raises:
            TemplateError: On syntax errors or type errors in the expression
        """
        if isinstance(expression, bool):
            return expression
        if expression is None:
            return True
        if isinstance(expression, (list, tuple)):
            return all(self.evaluate(e, scope) for e in expression)
        if isinstance(expression, (int, float)):
            return bool(expression)

        source = str(expression).strip()
        single = _SINGLE_EXPRESSION.match(source)
        if single:
            source = single.group("expr").strip()

        compiled = self._compile_expression(source)
        try:
            return to_bool(compiled(**scope))
        except UndefinedError as e:
            logger.debug(f"Condition '{source}' references undefined value: {e.message}")
            return False
        except LookupFailedError:
            raise
        except (TypeError, ValueError, ArithmeticError, SecurityError) as e:
            raise TemplateError(f"Cannot evaluate condition '{source}': {e}") from e
