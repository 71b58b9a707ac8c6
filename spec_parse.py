#!/usr/bin/env python3

# sections:
# (start of file) - implicit %package preamble for the main package
# %description
# any number of %package - %description pairs
# %prep
# %build
# %check
# %install
# %clean
# any amount of %pre/%post-related stuff
# any number of %files sections
# %changelog
#
# Nothing here evaluates macros.  Conditionals stay in whatever section they
# happen to sit in, and the caller gets to decide what they mean.

import enum
import os
import re
import stat
import types

from typing import (Dict, Iterable, List, Mapping, NamedTuple,
                    Optional, Sequence, Tuple, Union)

import git
from git import Repo

SECTIONS = frozenset([
    "%build", "%description", "%files", "%package", "%install", "%prep",
    "%changelog", "%clean", "%check", "%pre", "%post", "%preun", "%postun",
    "%verifyscript",
])

# prefixes, so %ifarch, %ifnarch, %ifos, %elifarch etc. come along for free
CONDITIONAL_MACROS = ("%if", "%elif", "%else", "%endif")

_NAME_RE = re.compile(r"%\w+")
_HEADER_RE = re.compile(r"(%\w+)(?:\s+(.*?))?\s*")
_MACRO_RE = re.compile(r"%\{([\w:-]+)\}")
_DEFINE_RE = re.compile(r"\s*%?([\w:-]+)(?:\s*=\s*|\s+)(.*)")
_TAG_RE = re.compile(r"([A-Za-z]\w*(?:\([\w,]+\))?)\s*:\s*(.*)")
_PATCH_RE = re.compile(r"Patch(\d*)\s*:\s*(\S+)", re.IGNORECASE)


class SpecError(Exception):
    def __init__(self, msg: str, path: Optional[str] = None,
                 line: Optional[str] = None,
                 section: Optional[str] = None) -> None:
        super().__init__(msg)
        self.msg = msg
        self.path = path
        self.line = line
        self.section = section

    def __str__(self) -> str:
        s = self.msg
        if self.line is not None:
            s += f" (at {self.line!r})"
        elif self.section:
            s = f"{self.section}: {s}"
        if self.path:
            s = f"{self.path}: {s}"
        return s


# Malformed header text, or a spec file we can't get at.
class InvalidSpecError(SpecError):
    pass


# A section header whose arguments don't fit its option grammar.
class InvalidArgumentsError(SpecError):
    pass


class LineKind(enum.Enum):
    ORDINARY = "ordinary"
    CONDITIONAL = "conditional"
    SECTION = "section"


class Classification(NamedTuple):
    kind: LineKind
    name: Optional[str] = None
    args: Optional[str] = None


def split_header(line: str) -> Tuple[Optional[str], Optional[str]]:
    """Split "%files -f list doc" into ("%files", "-f list doc").

    Returns (None, None) for anything that isn't "%name [args]".
    """
    if not line.startswith("%"):
        return None, None
    m = _HEADER_RE.fullmatch(line)
    if not m:
        return None, None
    return m.group(1), m.group(2) or None


def macro_type(name: str) -> LineKind:
    if name.startswith(CONDITIONAL_MACROS):
        return LineKind.CONDITIONAL
    if name in SECTIONS:
        return LineKind.SECTION
    # %setup, %dir and whatever else are just lines in a section
    return LineKind.ORDINARY


def classify(line: str) -> Classification:
    m = _NAME_RE.match(line)
    if not m:
        return Classification(LineKind.ORDINARY)

    kind = macro_type(m.group(0))
    name, args = split_header(line)
    if name is None:
        # "%if%{with foo}" is still a conditional; "%files-doc" is nothing
        if kind == LineKind.SECTION:
            kind = LineKind.ORDINARY
        return Classification(kind, m.group(0))
    return Classification(kind, name, args)


class SectionBlock(NamedTuple):
    header_line: str
    body_lines: Tuple[str, ...]
    name: str
    raw_args: Optional[str] = None
    synthetic: bool = False

    # Lines as they appeared in the file; the fake preamble header never did.
    @property
    def lines(self) -> Tuple[str, ...]:
        if self.synthetic:
            return self.body_lines
        return (self.header_line,) + self.body_lines

    # Spec text for this block; the preamble contributes only its body.
    @property
    def text(self) -> str:
        return "\n".join(self.lines)


def _preamble() -> SectionBlock:
    return SectionBlock("%package", (), "%package", None, synthetic=True)


def partition(lines: Union[str, Iterable[str]]) -> List[SectionBlock]:
    """Chop a spec file into its sections, in file order.

    The first block is always a synthetic %package block holding whatever
    comes before the first real section header.  Blank lines and comments
    are dropped; everything else ends up in exactly one block.
    """
    if isinstance(lines, str):
        lines = lines.split("\n")

    blocks: List[SectionBlock] = []
    current = _preamble()
    body: List[str] = []
    for line in lines:
        line = line.strip()
        if len(line) == 0 or line.startswith("#"):
            continue

        c = classify(line)
        if c.kind != LineKind.SECTION:
            body.append(line)
            continue

        blocks.append(current._replace(body_lines=tuple(body)))
        assert(c.name)
        current = SectionBlock(line, (), c.name, c.args)
        body = []

    blocks.append(current._replace(body_lines=tuple(body)))
    return blocks


class MacroTable:
    """Literal %{key} substitution.

    No recursion, no built-ins, no %{?conditional} forms: a macro expands to
    whatever was put in the table, or is left alone.
    """

    def __init__(self, macros: Optional[Mapping[str, str]] = None) -> None:
        self._macros: Dict[str, str] = dict(macros or {})

    @classmethod
    def from_defines(cls, defines: Iterable[str]) -> "MacroTable":
        # same shape as rpm --define: "name value" (or "name=value")
        table = cls()
        for d in defines:
            m = _DEFINE_RE.fullmatch(d)
            if not m:
                raise InvalidArgumentsError(f"Bad macro definition {d!r}")
            table.define(m.group(1), m.group(2))
        return table

    def define(self, name: str, value: str) -> None:
        self._macros[name] = value

    def setdefault(self, name: str, value: str) -> str:
        return self._macros.setdefault(name, value)

    def copy(self) -> "MacroTable":
        return MacroTable(self._macros)

    def get(self, name: str) -> Optional[str]:
        return self._macros.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._macros

    def __len__(self) -> int:
        return len(self._macros)

    def expand(self, s: str) -> str:
        return _MACRO_RE.sub(lambda m: self._macros.get(m.group(1),
                                                        m.group(0)), s)


class Arity(enum.Enum):
    FLAG = "none"
    VALUE = "single-value"
    REPEATED = "repeatable-value"


class OptionSpec(NamedTuple):
    letter: str
    arity: Arity
    # -n: the next bare token is the whole package name, not a suffix
    names_package: bool = False


class UnknownFlags(enum.Enum):
    IGNORE = "ignore"
    REJECT = "reject"


Grammar = Mapping[str, Sequence[OptionSpec]]
OptionValue = Union[bool, str, List[str]]

_NAME_FLAG = OptionSpec("-n", Arity.FLAG, names_package=True)
_SCRIPTLET = (OptionSpec("-p", Arity.VALUE), _NAME_FLAG)

# Sections missing from here take no flags at all.
OPTION_GRAMMAR: Grammar = types.MappingProxyType({
    "%description": (_NAME_FLAG,),
    "%changelog": (_NAME_FLAG,),
    "%files": (OptionSpec("-f", Arity.REPEATED), _NAME_FLAG),
    "%pre": _SCRIPTLET,
    "%post": _SCRIPTLET,
    "%preun": _SCRIPTLET,
    "%postun": _SCRIPTLET,
})

# Only for working out which package a %package header declares.
PACKAGE_NAME_GRAMMAR: Grammar = types.MappingProxyType({
    "%package": (_NAME_FLAG,),
})


class ParsedSectionArgs(NamedTuple):
    positional: List[str]
    options: Dict[str, OptionValue]
    package: Optional[str] = None


def _expand_args(parsed: ParsedSectionArgs,
                 macros: MacroTable) -> ParsedSectionArgs:
    options: Dict[str, OptionValue] = {}
    for (k, v) in parsed.options.items():
        if isinstance(v, list):
            options[k] = [macros.expand(x) for x in v]
        elif isinstance(v, str):
            options[k] = macros.expand(v)
        else:
            options[k] = v
    package = macros.expand(parsed.package) if parsed.package else None
    return ParsedSectionArgs([macros.expand(p) for p in parsed.positional],
                             options, package)


def parse_section_args(section_name: str, args_text: Optional[str],
                       grammar: Grammar = OPTION_GRAMMAR,
                       macros: Optional[MacroTable] = None,
                       unknown: UnknownFlags = UnknownFlags.IGNORE
                       ) -> ParsedSectionArgs:
    """Apply a section's option grammar to its header arguments.

    Tokens are split on whitespace, with no quoting.  Flags the grammar
    doesn't know are dropped, or rejected with unknown=UnknownFlags.REJECT.
    """
    if args_text is None:
        return ParsedSectionArgs([], {})

    tokens = args_text.split()
    specs = grammar.get(section_name)
    if specs is None:
        parsed = ParsedSectionArgs(tokens, {})
        return _expand_args(parsed, macros) if macros else parsed

    by_letter = {s.letter: s for s in specs}
    positional: List[str] = []
    options: Dict[str, OptionValue] = {}
    package = None
    i = 0
    while i < len(tokens):
        tok = tokens[i]
        i += 1

        spec = by_letter.get(tok)
        if spec is None:
            if not tok.startswith("-"):
                positional.append(tok)
            elif unknown == UnknownFlags.REJECT:
                raise InvalidArgumentsError(f"Unknown option {tok}",
                                            section=section_name)
            continue

        if spec.arity == Arity.FLAG:
            options[tok] = True
            if spec.names_package and i < len(tokens) and \
               not tokens[i].startswith("-"):
                package = tokens[i]
                i += 1
            continue

        if i >= len(tokens):
            raise InvalidArgumentsError(f"Option {tok} requires a value",
                                        section=section_name)
        value = tokens[i]
        i += 1
        if spec.arity == Arity.REPEATED:
            prev = options.setdefault(tok, [])
            assert(isinstance(prev, list))
            prev.append(value)
        else:
            options[tok] = value

    parsed = ParsedSectionArgs(positional, options, package)
    return _expand_args(parsed, macros) if macros else parsed


def parse_header(line: str, path: Optional[str] = None,
                 grammar: Grammar = OPTION_GRAMMAR,
                 macros: Optional[MacroTable] = None,
                 unknown: UnknownFlags = UnknownFlags.IGNORE
                 ) -> Tuple[str, ParsedSectionArgs]:
    name, args = split_header(line.strip())
    if name is None:
        raise InvalidSpecError("Invalid macro line", path=path, line=line)

    try:
        return name, parse_section_args(name, args, grammar, macros, unknown)
    except SpecError as e:
        e.path = e.path or path
        e.line = e.line or line
        raise


def _read_file(path: str) -> str:
    try:
        st = os.stat(path)
    except FileNotFoundError:
        raise InvalidSpecError("No such file", path=path)
    except OSError as e:
        raise InvalidSpecError("Couldn't read spec file", path=path) from e
    if not stat.S_ISREG(st.st_mode):
        raise InvalidSpecError("Not an ordinary file", path=path)

    try:
        with open(path, "r") as f:
            return f.read()
    except (OSError, UnicodeDecodeError) as e:
        raise InvalidSpecError("Couldn't read spec file", path=path) from e


# The spec as of some commit of the (dist-)git repo it lives in.  The file
# needn't exist in the working tree.
def _read_git(path: str, rev: str) -> str:
    realpath = os.path.realpath(path)
    try:
        r = Repo(os.path.dirname(realpath), search_parent_directories=True)
        top = os.path.realpath(r.working_dir)
        relpath = os.path.relpath(realpath, top).replace(os.sep, "/")
        return str(r.git.show(f"{rev}:{relpath}"))
    except (git.exc.GitError, ValueError) as e:
        raise InvalidSpecError(f"Couldn't read spec file at {rev}",
                               path=path) from e


# Do not assume a field not being present here means it is not in the spec
# file.  We do not parse out everything.
#
# currently tracked:
#  - sections
#  - preamble tags (Name, Version, Release, ...)
#  - patches
class Spec:
    name: Optional[str]

    def __init__(self, path: str, macros: Optional[MacroTable] = None,
                 rev: Optional[str] = None,
                 unknown: UnknownFlags = UnknownFlags.IGNORE) -> None:
        self.path = path
        self.unknown = unknown
        self.data = _read_git(path, rev) if rev else _read_file(path)
        self.sections = partition(self.data)

        self.tags: Dict[str, str] = {}
        plist: List[Tuple[int, str]] = []
        for line in self.sections[0].body_lines:
            m = _TAG_RE.fullmatch(line)
            if not m:
                continue
            self.tags.setdefault(m.group(1), m.group(2))

            m = _PATCH_RE.fullmatch(line)
            if m:
                plist.append((int(m.group(1) or 0), m.group(2)))
        self.patches = sorted(plist)

        # the caller's table wins over what the preamble says
        self.macros = macros.copy() if macros else MacroTable()
        for tag in ["Name", "Version", "Release"]:
            value = self.tag(tag)
            if value is not None:
                self.macros.setdefault(tag.lower(), self.macros.expand(value))
        name = self.tag("Name")
        self.name = self.macros.expand(name) if name else None
        return

    # RPM doesn't care about tag case
    def tag(self, key: str) -> Optional[str]:
        for (k, v) in self.tags.items():
            if k.lower() == key.lower():
                return v
        return None

    def parse(self, block: SectionBlock,
              grammar: Grammar = OPTION_GRAMMAR) -> ParsedSectionArgs:
        if block.synthetic:
            return ParsedSectionArgs([], {})
        _, parsed = parse_header(block.header_line, self.path, grammar,
                                 self.macros, self.unknown)
        return parsed

    def package_name(self, block: SectionBlock) -> Optional[str]:
        grammar = PACKAGE_NAME_GRAMMAR if block.name == "%package" \
            else OPTION_GRAMMAR
        args = self.parse(block, grammar)
        if args.package:
            return args.package
        if not args.positional:
            return self.name
        if args.options.get("-n"):
            # "%files doc -n": flag after the name still means verbatim
            return args.positional[0]
        if self.name is None:
            raise InvalidSpecError("No Name tag to qualify subpackage "
                                   f"{args.positional[0]}", path=self.path,
                                   line=block.header_line)
        return f"{self.name}-{args.positional[0]}"

    def find(self, section_name: str,
             package: Optional[str] = None) -> List[SectionBlock]:
        want = package if package is not None else self.name
        return [b for b in self.sections if b.name == section_name and
                self.package_name(b) == want]

    def files(self, package: Optional[str] = None) -> List[str]:
        return [l for b in self.find("%files", package) for l in b.body_lines]

    def file_lists(self, package: Optional[str] = None) -> List[str]:
        lists: List[str] = []
        for b in self.find("%files", package):
            f = self.parse(b).options.get("-f", [])
            assert(isinstance(f, list))
            lists += f
        return lists

    def script_program(self, section_name: str,
                       package: Optional[str] = None) -> Optional[str]:
        for b in self.find(section_name, package):
            p = self.parse(b).options.get("-p")
            if isinstance(p, str):
                return p
        return None
