"""Go source rewriting for the multiplexed builder.

Each command's `package main` is turned into an importable package whose
entrypoint can be called from a shared dispatcher:

- ``package main`` becomes ``package <ident>``
- ``func main()`` becomes the exported ``BBMain``
- each ``func init()`` becomes ``bbInit<N>``
- package-level variables initialized from the flag package are split
  into a declaration and an assignment inside ``bbVarInit<N>``, so that
  flags are registered on the flag set of the running command only

Rewriting works on a token stream with byte offsets; edits are applied to
the original text so comments, directives and formatting survive.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

MODULE_PATH = "bb.local/bb"
DEFAULT_GO_VERSION = "1.20"
GENERATED_HEADER = "// Code generated by initramfs-imagegen. DO NOT EDIT.\n"

GO_KEYWORDS = frozenset(
    {
        "break",
        "case",
        "chan",
        "const",
        "continue",
        "default",
        "defer",
        "else",
        "fallthrough",
        "for",
        "func",
        "go",
        "goto",
        "if",
        "import",
        "interface",
        "map",
        "package",
        "range",
        "return",
        "select",
        "struct",
        "switch",
        "type",
        "var",
    }
)

# Package names that cannot be used for an importable command package
RESERVED_PACKAGE_NAMES = GO_KEYWORDS | {"main", "init", "bb"}

# Result types of flag package members used in package-level initializers
FLAG_TYPES = {
    "Bool": "*bool",
    "Int": "*int",
    "Int64": "*int64",
    "Uint": "*uint",
    "Uint64": "*uint64",
    "String": "*string",
    "Float64": "*float64",
    "Duration": "*{time}Duration",
    "Arg": "string",
    "Args": "[]string",
    "NArg": "int",
    "NFlag": "int",
    "Parsed": "bool",
    "Lookup": "*{flag}.Flag",
    "NewFlagSet": "*{flag}.FlagSet",
    "CommandLine": "*{flag}.FlagSet",
}

IDENT = "IDENT"
NUMBER = "NUMBER"
STRING = "STRING"
CHAR = "CHAR"
OP = "OP"
SEMI = "SEMI"
EOF = "EOF"

_TOKEN_RE = re.compile(
    r"""
      (?P<newline>\n)
    | (?P<ws>[ \t\r\f\ufeff]+)
    | (?P<comment>//[^\n]*|/\*.*?\*/)
    | (?P<raw_string>`[^`]*`)
    | (?P<string>"(?:[^"\\\n]|\\.)*")
    | (?P<char>'(?:[^'\\\n]|\\.)+')
    | (?P<number>
          0[xX][0-9a-fA-F_]*(?:\.[0-9a-fA-F_]*)?(?:[pP][+-]?[0-9_]+)?i?
        | 0[bB][01_]+i?
        | 0[oO][0-7_]+i?
        | (?:\d[\d_]*(?:\.[\d_]*)?|\.\d[\d_]*)(?:[eE][+-]?[\d_]+)?i?
      )
    | (?P<ident>[^\W\d]\w*)
    | (?P<op>
          \.\.\.|<<=|>>=|&\^=|&&|\|\||<-|\+\+|--|==|!=|<=|>=|:=
        | \+=|-=|\*=|/=|%=|&=|\|=|\^=|<<|>>|&\^
        | [-+*/%&|^<>=!~()\[\]{},;.:]
      )
    | (?P<error>.)
    """,
    re.VERBOSE | re.DOTALL,
)

_KIND_BY_GROUP = {
    "raw_string": STRING,
    "string": STRING,
    "char": CHAR,
    "number": NUMBER,
    "ident": IDENT,
    "op": OP,
}

_OPEN = {"(": ")", "[": "]", "{": "}"}
_CLOSE = frozenset(_OPEN.values())


class RewriteError(Exception):
    """Raised when a Go source file cannot be rewritten."""

    def __init__(
        self, message: str, offset: int | None = None, code: str = "rewrite_error"
    ) -> None:
        if offset is not None:
            message = f"{message} (at offset {offset})"
        super().__init__(message)
        self.offset = offset
        self.code = code


@dataclass(frozen=True)
class Token:
    """A Go token with its byte span in the source text."""

    kind: str
    value: str
    start: int
    end: int

    def is_op(self, value: str) -> bool:
        return self.kind == OP and self.value == value


def _ends_statement(token: Token) -> bool:
    if token.kind == IDENT:
        return token.value not in GO_KEYWORDS or token.value in (
            "break",
            "continue",
            "fallthrough",
            "return",
        )
    if token.kind in (NUMBER, STRING, CHAR):
        return True
    return token.kind == OP and token.value in ("++", "--", ")", "]", "}")


def tokenize(source: str) -> list[Token]:
    """Split Go source into tokens, inserting automatic semicolons.

    Args:
        source: Go source text.

    Returns:
        Tokens ending with an EOF token. Explicit and automatic semicolons
        both have kind SEMI; automatic ones are zero-width.

    Raises:
        RewriteError: On characters that cannot start a token.
    """
    tokens: list[Token] = []
    last: Token | None = None
    pos = 0
    while pos < len(source):
        match = _TOKEN_RE.match(source, pos)
        group = match.lastgroup if match else "error"
        if match is None or group == "error":
            raise RewriteError(f"unexpected character {source[pos]!r}", offset=pos)

        value = match.group()
        if group == "newline" or (group == "comment" and "\n" in value):
            if last is not None and _ends_statement(last):
                last = Token(SEMI, "\n", match.start(), match.start())
                tokens.append(last)
        elif group == "op" and value == ";":
            last = Token(SEMI, ";", match.start(), match.end())
            tokens.append(last)
        elif group not in ("ws", "comment"):
            last = Token(_KIND_BY_GROUP[group], value, match.start(), match.end())
            tokens.append(last)
        pos = match.end()

    if last is not None and _ends_statement(last):
        tokens.append(Token(SEMI, "\n", len(source), len(source)))
    tokens.append(Token(EOF, "", len(source), len(source)))
    return tokens


def sanitize_ident(name: str) -> str:
    """Turn a command name into a valid Go package identifier."""
    ident = re.sub(r"\W", "_", name)
    if not ident or ident[0].isdigit():
        ident = f"_{ident}"
    if ident in RESERVED_PACKAGE_NAMES:
        ident = f"{ident}cmd"
    return ident


def go_quote(value: str) -> str:
    """Quote a string as a Go interpreted string literal."""
    return json.dumps(value)


@dataclass
class RewrittenFile:
    """Result of rewriting one Go source file.

    Attributes:
        source: Rewritten source text.
        has_main: Whether the file declared func main.
        init_funcs: New names of the file's init functions, in order.
        var_init: Name of the generated variable-initializer function,
            or None if no variables were hoisted.
    """

    source: str
    has_main: bool = False
    init_funcs: list[str] = field(default_factory=list)
    var_init: str | None = None


def _split_top_level(tokens: Sequence[Token], separator: str) -> list[list[Token]]:
    parts: list[list[Token]] = [[]]
    depth = 0
    for token in tokens:
        if token.kind == OP and token.value in _OPEN:
            depth += 1
        elif token.kind == OP and token.value in _CLOSE:
            depth -= 1
        if depth == 0 and token.is_op(separator):
            parts.append([])
            continue
        parts[-1].append(token)
    return parts


def _find_spec_end(tokens: Sequence[Token], start: int, in_group: bool) -> int:
    depth = 0
    i = start
    while tokens[i].kind != EOF:
        token = tokens[i]
        if depth == 0 and token.kind == SEMI:
            return i
        if token.kind == OP and token.value in _OPEN:
            depth += 1
        elif token.kind == OP and token.value in _CLOSE:
            if depth == 0 and in_group:
                return i
            depth -= 1
        i += 1
    return i


class _FileRewriter:
    def __init__(
        self,
        source: str,
        package_name: str,
        init_start: int,
        var_init_name: str,
    ) -> None:
        self.source = source
        self.tokens = tokenize(source)
        self.package_name = package_name
        self.init_start = init_start
        self.var_init_name = var_init_name
        self.edits: list[tuple[int, int, str]] = []
        self.imports: dict[str, str] = {}
        self.assignments: list[str] = []
        self.result = RewrittenFile(source=source)
        self.package_edit: int | None = None
        self.needs_time_import = False

    def text(self, first: Token, last: Token) -> str:
        return self.source[first.start : last.end]

    def run(self) -> RewrittenFile:
        tokens = self.tokens
        depth = 0
        at_decl = True
        i = 0
        while tokens[i].kind != EOF:
            token = tokens[i]
            if depth == 0 and at_decl and token.kind == IDENT:
                if token.value == "package":
                    self._package_clause(i)
                elif token.value == "import":
                    i = self._import_decl(i)
                    continue
                elif token.value == "func":
                    self._func_decl(i)
                elif token.value == "var":
                    i = self._var_decl(i)
                    continue

            if token.kind == OP and token.value in _OPEN:
                depth += 1
            elif token.kind == OP and token.value in _CLOSE:
                depth -= 1
            at_decl = depth == 0 and token.kind == SEMI
            i += 1

        if self.package_edit is None:
            raise RewriteError("missing package clause")
        return self._finish()

    def _package_clause(self, i: int) -> None:
        name = self.tokens[i + 1]
        if name.kind != IDENT:
            raise RewriteError("malformed package clause", offset=name.start)
        if name.value != "main":
            raise RewriteError(
                f"expected package main, found package {name.value}", offset=name.start
            )
        self.package_edit = len(self.edits)
        self.edits.append((name.start, name.end, self.package_name))

    def _import_spec(self, spec: Sequence[Token]) -> None:
        if not spec or spec[-1].kind != STRING:
            return
        path = spec[-1].value.strip('"`')
        if len(spec) > 1:
            local = spec[0].value
        else:
            local = path.rsplit("/", 1)[-1]
        self.imports[path] = local

    def _import_decl(self, i: int) -> int:
        tokens = self.tokens
        if tokens[i + 1].is_op("("):
            j = i + 2
            while tokens[j].kind != EOF and not tokens[j].is_op(")"):
                if tokens[j].kind == SEMI:
                    j += 1
                    continue
                end = _find_spec_end(tokens, j, in_group=True)
                self._import_spec(tokens[j:end])
                j = end
            return j + 1
        end = _find_spec_end(tokens, i + 1, in_group=False)
        self._import_spec(tokens[i + 1 : end])
        return end

    def _func_decl(self, i: int) -> None:
        name, paren = self.tokens[i + 1], self.tokens[i + 2]
        if name.kind != IDENT or not paren.is_op("("):
            return
        if name.value == "main":
            self.edits.append((name.start, name.end, "BBMain"))
            self.result.has_main = True
        elif name.value == "init":
            new_name = f"bbInit{self.init_start + len(self.result.init_funcs)}"
            self.edits.append((name.start, name.end, new_name))
            self.result.init_funcs.append(new_name)

    def _var_decl(self, i: int) -> int:
        tokens = self.tokens
        if tokens[i + 1].is_op("("):
            j = i + 2
            while tokens[j].kind != EOF and not tokens[j].is_op(")"):
                if tokens[j].kind == SEMI:
                    j += 1
                    continue
                end = _find_spec_end(tokens, j, in_group=True)
                self._var_spec(tokens[j:end])
                j = end
            return j + 1
        end = _find_spec_end(tokens, i + 1, in_group=False)
        self._var_spec(tokens[i + 1 : end])
        return end

    def _flag_member(self, value: Sequence[Token]) -> str | None:
        """Return the flag member a value expression calls or reads, if any."""
        flag_name = self.imports.get("flag")
        if flag_name in (None, "_", "."):
            return None
        if len(value) < 3:
            return None
        pkg, dot, member = value[0], value[1], value[2]
        if not (pkg.kind == IDENT and pkg.value == flag_name and dot.is_op(".")):
            return None
        if member.kind != IDENT:
            return None
        if len(value) == 3:
            return member.value
        if not value[3].is_op("(") or not value[-1].is_op(")"):
            return None
        # the call must span the whole expression
        depth = 0
        for index, token in enumerate(value[3:], start=3):
            if token.kind == OP and token.value in _OPEN:
                depth += 1
            elif token.kind == OP and token.value in _CLOSE:
                depth -= 1
                if depth == 0 and index != len(value) - 1:
                    return None
        return member.value

    def _flag_type(self, member: str) -> str | None:
        template = FLAG_TYPES.get(member)
        if template is None:
            return None
        if "{time}" in template:
            time_name = self.imports.get("time")
            if time_name == ".":
                prefix = ""
            elif time_name in (None, "_"):
                self.needs_time_import = True
                prefix = "time."
            else:
                prefix = f"{time_name}."
            template = template.replace("{time}", prefix)
        return template.replace("{flag}", self.imports["flag"])

    def _var_spec(self, spec: Sequence[Token]) -> None:
        names: list[Token] = []
        k = 0
        while k < len(spec) and spec[k].kind == IDENT:
            names.append(spec[k])
            if k + 1 < len(spec) and spec[k + 1].is_op(","):
                k += 2
            else:
                k += 1
                break
        if not names:
            return

        parts = _split_top_level(spec[k:], "=")
        if len(parts) != 2 or not parts[1]:
            return
        type_tokens, value_tokens = parts

        values = _split_top_level(value_tokens, ",")
        members = [self._flag_member(value) for value in values]
        if not any(members):
            return

        name_list = ", ".join(name.value for name in names)
        value_text = self.text(value_tokens[0], value_tokens[-1])

        if type_tokens:
            self.edits.append((type_tokens[-1].end, value_tokens[-1].end, ""))
        else:
            if len(values) != len(names):
                raise RewriteError(
                    f"cannot hoist package-level flag variable {name_list}",
                    offset=names[0].start,
                )
            types = {
                self._flag_type(member) if member else None for member in members
            }
            if None in types or len(types) != 1:
                raise RewriteError(
                    f"cannot hoist package-level flag variable {name_list}: "
                    "declare it with an explicit type",
                    offset=names[0].start,
                )
            (var_type,) = types
            self.edits.append((names[-1].end, value_tokens[-1].end, f" {var_type}"))

        logger.debug("Hoisting flag variable %s", name_list)
        self.assignments.append(f"\t{name_list} = {value_text}\n")

    def _finish(self) -> RewrittenFile:
        if self.needs_time_import and self.package_edit is not None:
            start, end, text = self.edits[self.package_edit]
            self.edits[self.package_edit] = (start, end, f'{text}\n\nimport "time"')

        source = self.source
        for start, end, text in sorted(self.edits, reverse=True):
            source = source[:start] + text + source[end:]

        if self.assignments:
            if not source.endswith("\n"):
                source += "\n"
            source += f"\nfunc {self.var_init_name}() {{\n"
            source += "".join(self.assignments)
            source += "}\n"
            self.result.var_init = self.var_init_name

        self.result.source = source
        return self.result


def rewrite_file(
    source: str,
    package_name: str,
    init_start: int = 0,
    var_init_name: str = "bbVarInit0",
) -> RewrittenFile:
    """Rewrite one file of a main package into an importable package.

    Args:
        source: Go source text.
        package_name: New package name.
        init_start: First index used for renamed init functions.
        var_init_name: Name of the generated variable-initializer function.

    Returns:
        RewrittenFile with the new source and generated function names.

    Raises:
        RewriteError: If the file is not part of a main package or a flag
            variable cannot be hoisted.
    """
    return _FileRewriter(source, package_name, init_start, var_init_name).run()


def generate_package_init(
    package_name: str, var_inits: Sequence[str], init_funcs: Sequence[str]
) -> str:
    """Generate the BBInit function of a rewritten package.

    Hoisted variable initializers run first, then init functions, both in
    file order.
    """
    body = "".join(f"\t{name}()\n" for name in [*var_inits, *init_funcs])
    return (
        f"{GENERATED_HEADER}\n"
        f"package {package_name}\n\n"
        "// BBInit runs the package-level initialization of the command.\n"
        f"func BBInit() {{\n{body}}}\n"
    )


def generate_main(commands: Mapping[str, str]) -> str:
    """Generate the dispatcher of the multiplexed binary.

    The command is chosen by the base name of argv[0]. When invoked as
    "bb" the next argument names the command; a "#!name" argument, as
    passed by a shellbang stub, names it as well and is dropped together
    with the stub path.

    Args:
        commands: Command name to package identifier under cmds/.

    Returns:
        Source of main.go.
    """
    names = sorted(commands)
    imports = "".join(
        f"\tbbcmd_{commands[name]} {go_quote(f'{MODULE_PATH}/cmds/{commands[name]}')}\n"
        for name in names
    )
    table = "".join(
        f"\t{go_quote(name)}: {{init: bbcmd_{commands[name]}.BBInit, "
        f"main: bbcmd_{commands[name]}.BBMain}},\n"
        for name in names
    )
    return f"""{GENERATED_HEADER}
package main

import (
\t"flag"
\t"fmt"
\t"os"
\t"path/filepath"
\t"sort"
\t"strings"

{imports})

type bbCommand struct {{
\tinit func()
\tmain func()
}}

var bbCommands = map[string]bbCommand{{
{table}}}

// bbResolve picks the command name and its argument vector.
func bbResolve(args []string) (string, []string) {{
\tname := filepath.Base(args[0])
\tif name == "bb" && len(args) > 1 {{
\t\targs = args[1:]
\t\tname = filepath.Base(args[0])
\t\tif strings.HasPrefix(args[0], "#!") {{
\t\t\t// #!/bbin/bb #!name stubs run as: bb #!name /bbin/name args...
\t\t\tname = strings.TrimPrefix(args[0], "#!")
\t\t\tif len(args) > 1 {{
\t\t\t\targs = args[1:]
\t\t\t}}
\t\t}}
\t}}
\treturn name, args
}}

func bbUsage() {{
\tnames := make([]string, 0, len(bbCommands))
\tfor name := range bbCommands {{
\t\tnames = append(names, name)
\t}}
\tsort.Strings(names)
\tfmt.Fprintf(os.Stderr, "usage: bb <command> [args...]\\ncommands: %s\\n", strings.Join(names, " "))
}}

func main() {{
\tname, args := bbResolve(os.Args)
\tcmd, ok := bbCommands[name]
\tif !ok {{
\t\tif name != "bb" {{
\t\t\tfmt.Fprintf(os.Stderr, "bb: unknown command %q\\n", name)
\t\t}}
\t\tbbUsage()
\t\tos.Exit(1)
\t}}
\tos.Args = args
\tflag.CommandLine = flag.NewFlagSet(args[0], flag.ExitOnError)
\tcmd.init()
\tcmd.main()
}}
"""


def _version_key(version: str) -> tuple[int, ...]:
    parts = re.findall(r"\d+", version)
    return tuple(int(part) for part in parts)


def max_go_version(
    versions: Iterable[str | None], default: str = DEFAULT_GO_VERSION
) -> str:
    """Return the highest Go version, or default if none is given."""
    known = [v for v in versions if v]
    if not known:
        return default
    return max([*known, default], key=_version_key)


def generate_go_mod(modules: Mapping[str, Path], go_version: str) -> str:
    """Generate go.mod of the multiplexed module.

    Args:
        modules: Owning module path to its local directory.
        go_version: Go language version.

    Returns:
        go.mod contents requiring and replacing every owning module.
    """
    lines = [f"module {MODULE_PATH}", "", f"go {go_version}", ""]
    if modules:
        lines.append("require (")
        lines.extend(f"\t{path} v0.0.0" for path in sorted(modules))
        lines.append(")")
        lines.append("")
        lines.append("replace (")
        lines.extend(f"\t{path} => {modules[path]}" for path in sorted(modules))
        lines.append(")")
        lines.append("")
    return "\n".join(lines)


__all__ = [
    "DEFAULT_GO_VERSION",
    "FLAG_TYPES",
    "GO_KEYWORDS",
    "MODULE_PATH",
    "RewriteError",
    "RewrittenFile",
    "Token",
    "generate_go_mod",
    "generate_main",
    "generate_package_init",
    "go_quote",
    "max_go_version",
    "rewrite_file",
    "sanitize_ident",
    "tokenize",
]
