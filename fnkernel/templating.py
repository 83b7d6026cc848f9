"""
Prompt template rendering.

Template language:
- ``{{topic}}`` / ``{{$topic}}``: substitute an argument (or its default)
- ``{{Plugin.Function}}``: call a function, substitute its result
- ``{{Plugin.Function arg=value arg2=$var}}``: named arguments
- ``{{Plugin.Function "text"}}`` / ``{{Plugin.Function $var}}``: one
  positional value, bound to the function's first parameter
- ``{{"literal"}}``: a quoted literal

Values are quoted literals ('...' or "..."), ``$variable`` references or
bare words. Text outside blocks is copied verbatim; an unterminated ``{{``
is literal text.
"""

from __future__ import annotations

import html
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

from fnkernel.protocols import KernelError, TemplateSyntaxError, UndefinedVariableError
from fnkernel.registry import FunctionRegistry
from fnkernel.types import (
    AuthorRole,
    CancellationToken,
    ChatHistory,
    ChatMessage,
    ExecutionSettings,
    KernelFunction,
    KernelParameter,
    PromptTemplate,
)

logger = logging.getLogger(__name__)

FunctionCaller = Callable[[str, dict[str, Any]], Awaitable[Any]]

_BLOCK_RE = re.compile(r"\{\{(.*?)\}\}", re.DOTALL)
_TOKEN_RE = re.compile(
    r"""\s*(?:(?P<key>[A-Za-z_][A-Za-z0-9_]*)=)?"""
    r"""(?:"(?P<dq>(?:[^"\\]|\\.)*)"|'(?P<sq>(?:[^'\\]|\\.)*)'|(?P<bare>[^\s'"=]+))"""
)
_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_FUNC_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*\.[A-Za-z_][A-Za-z0-9_]*$")
_MESSAGE_RE = re.compile(
    r"<message\s+role\s*=\s*[\"'](?P<role>\w+)[\"']\s*>(?P<body>.*?)</message>",
    re.DOTALL,
)
_ESCAPE_RE = re.compile(r"\\(.)")


@dataclass
class _Value:
    literal: Optional[str] = None
    variable: Optional[str] = None


@dataclass
class _Block:
    """A parsed ``{{ ... }}`` block."""

    kind: str  # "text", "variable", "literal", "function"
    text: str = ""
    name: str = ""
    positional: Optional[_Value] = None
    named: dict[str, _Value] = field(default_factory=dict)


def _tokenize(source: str) -> list[tuple[Optional[str], _Value]]:
    tokens: list[tuple[Optional[str], _Value]] = []
    pos = 0
    source = source.rstrip()
    while pos < len(source):
        match = _TOKEN_RE.match(source, pos)
        if match is None or match.end() == pos:
            raise TemplateSyntaxError(f"Cannot parse template block near: {source[pos:]!r}")
        pos = match.end()
        key = match.group("key")
        if match.group("dq") is not None:
            value = _Value(literal=_ESCAPE_RE.sub(r"\1", match.group("dq")))
        elif match.group("sq") is not None:
            value = _Value(literal=_ESCAPE_RE.sub(r"\1", match.group("sq")))
        else:
            bare = match.group("bare")
            if bare.startswith("$"):
                if not _IDENT_RE.match(bare[1:]):
                    raise TemplateSyntaxError(f"Invalid variable reference: {bare}")
                value = _Value(variable=bare[1:])
            else:
                value = _Value(literal=bare)
        tokens.append((key, value))
    return tokens


def _parse_block(source: str) -> _Block:
    tokens = _tokenize(source)
    if not tokens:
        return _Block(kind="literal", text="")

    head_key, head = tokens[0]
    if head_key is not None:
        raise TemplateSyntaxError(f"Template block must start with a name: {source!r}")

    if head.variable is not None:
        if len(tokens) > 1:
            raise TemplateSyntaxError(f"Unexpected tokens after variable: {source!r}")
        return _Block(kind="variable", name=head.variable)

    if head.literal is not None and _FUNC_RE.match(head.literal):
        block = _Block(kind="function", name=head.literal)
        for key, value in tokens[1:]:
            if key is None:
                if block.positional is not None or block.named:
                    raise TemplateSyntaxError(
                        f"Only one positional value, before named arguments: {source!r}"
                    )
                block.positional = value
            else:
                if key in block.named:
                    raise TemplateSyntaxError(f"Duplicate argument '{key}': {source!r}")
                block.named[key] = value
        return block

    if len(tokens) > 1:
        raise TemplateSyntaxError(f"Unexpected tokens in template block: {source!r}")
    if head.literal is not None and _IDENT_RE.match(head.literal) and not source.lstrip().startswith(("'", '"')):
        return _Block(kind="variable", name=head.literal)
    return _Block(kind="literal", text=head.literal or "")


def parse_template(text: str) -> list[_Block]:
    """Split template text into literal text and parsed blocks."""
    blocks: list[_Block] = []
    last = 0
    for match in _BLOCK_RE.finditer(text):
        if match.start() > last:
            blocks.append(_Block(kind="text", text=text[last : match.start()]))
        blocks.append(_parse_block(match.group(1)))
        last = match.end()
    if last < len(text):
        blocks.append(_Block(kind="text", text=text[last:]))
    return blocks


def extract_variables(template: Union[str, PromptTemplate]) -> list[str]:
    """Names of all variables a template references, in first-use order."""
    text = template.text if isinstance(template, PromptTemplate) else template
    names: list[str] = []
    for block in parse_template(text):
        candidates: list[Optional[str]] = []
        if block.kind == "variable":
            candidates.append(block.name)
        elif block.kind == "function":
            if block.positional is not None:
                candidates.append(block.positional.variable)
            candidates.extend(v.variable for v in block.named.values())
        for name in candidates:
            if name and name not in names:
                names.append(name)
    return names


def _stringify(value: Any) -> str:
    return "" if value is None else str(value)


class PromptRenderer:
    """Expands templates using arguments and inline function calls.

    Args:
        registry: Resolves inline function names.
        caller: Invokes a resolved function. Defaults to ``registry.invoke``;
            the kernel passes its filtered invoker instead.
    """

    def __init__(
        self,
        registry: FunctionRegistry,
        caller: Optional[FunctionCaller] = None,
    ) -> None:
        self._registry = registry
        self._caller = caller

    @property
    def registry(self) -> FunctionRegistry:
        return self._registry

    async def render(
        self,
        template: Union[str, PromptTemplate],
        arguments: Optional[dict[str, Any]] = None,
        *,
        cancellation: Optional[CancellationToken] = None,
        caller: Optional[FunctionCaller] = None,
        escape_values: bool = False,
    ) -> str:
        """Render a template to its final prompt text.

        ``caller`` overrides the renderer's function caller for this call.
        With ``escape_values``, substituted variables and inline results are
        XML-escaped so only markup written in the template itself is read by
        parse_chat_prompt.

        Raises:
            UndefinedVariableError: A variable has no value and no default.
            UnknownFunctionError: An inline function is not registered.
            TemplateSyntaxError: A block cannot be parsed.
        """
        if isinstance(template, PromptTemplate):
            text, defaults = template.text, template.defaults()
        else:
            text, defaults = template, {}
        args = dict(arguments or {})
        invoke = caller or self._caller or self._registry.invoke

        def lookup(name: str) -> Any:
            if name in args:
                return args[name]
            if name in defaults:
                return defaults[name]
            raise UndefinedVariableError(name)

        def resolve_value(value: _Value) -> Any:
            if value.variable is not None:
                return lookup(value.variable)
            return value.literal

        def substitute(value: Any) -> str:
            text = _stringify(value)
            return html.escape(text, quote=False) if escape_values else text

        parts: list[str] = []
        for block in parse_template(text):
            if block.kind == "text":
                parts.append(block.text)
            elif block.kind == "literal":
                parts.append(block.text)
            elif block.kind == "variable":
                parts.append(substitute(lookup(block.name)))
            else:
                if cancellation is not None:
                    cancellation.raise_if_cancelled("render")
                function = self._registry.resolve(block.name)
                call_args = {key: resolve_value(v) for key, v in block.named.items()}
                if block.positional is not None:
                    if not function.parameters:
                        raise TemplateSyntaxError(
                            f"{block.name} takes no parameters but a value was given"
                        )
                    first = function.parameters[0].name
                    if first in call_args:
                        raise TemplateSyntaxError(
                            f"{block.name}: '{first}' given both positionally and by name"
                        )
                    call_args[first] = resolve_value(block.positional)
                logger.debug("Inline call %s(%s)", block.name, ", ".join(call_args))
                result = await invoke(block.name, call_args)
                parts.append(substitute(result))
        return "".join(parts)


def create_prompt_function(
    name: str,
    template: Union[str, PromptTemplate],
    *,
    plugin_name: str = "",
    description: Optional[str] = None,
    settings: Optional[ExecutionSettings] = None,
) -> KernelFunction:
    """Wrap a prompt template as a kernel function.

    Parameters come from the template's declared input variables plus any
    other variable it references. Invoking the function renders the
    template and sends it through the invoking kernel; the result is the
    completion text.
    """
    if isinstance(template, str):
        template = PromptTemplate(text=template)
    declared = {v.name: v for v in template.input_variables}
    params = []
    for var_name in list(declared) + [
        n for n in extract_variables(template) if n not in declared
    ]:
        var = declared.get(var_name)
        if var is None:
            params.append(KernelParameter(name=var_name))
            continue
        params.append(
            KernelParameter(
                name=var_name,
                required=var.is_required and var.default is None,
                description=var.description,
                default=var.default,
            )
        )

    async def invoker(arguments: dict[str, Any], kernel: Any) -> str:
        if kernel is None:
            raise KernelError(f"Prompt function '{name}' needs a kernel to run")
        result = await kernel.invoke_prompt(template, arguments, settings)
        return str(result)

    return KernelFunction(
        plugin_name=plugin_name,
        name=name,
        description=description if description is not None else template.description,
        parameters=tuple(params),
        invoker=invoker,
        is_prompt=True,
    )


def parse_chat_prompt(rendered: str) -> ChatHistory:
    """Turn a rendered prompt into a chat history.

    ``<message role="...">...</message>`` blocks become messages of that
    role; any other non-blank text becomes a user message. A prompt without
    message tags is a single user message.
    """
    history = ChatHistory()
    matches = list(_MESSAGE_RE.finditer(rendered))
    if not matches:
        history.add_user_message(html.unescape(rendered))
        return history

    last = 0
    for match in matches:
        outside = rendered[last : match.start()].strip()
        if outside:
            history.add_user_message(html.unescape(outside))
        try:
            role = AuthorRole(match.group("role").lower())
        except ValueError:
            raise TemplateSyntaxError(f"Unknown message role: {match.group('role')!r}") from None
        if role == AuthorRole.TOOL:
            raise TemplateSyntaxError("Tool messages cannot be declared in a prompt")
        try:
            history.add(ChatMessage(role=role, content=html.unescape(match.group("body").strip())))
        except ValueError as e:
            raise TemplateSyntaxError(str(e)) from e
        last = match.end()
    trailing = rendered[last:].strip()
    if trailing:
        history.add_user_message(html.unescape(trailing))
    return history
