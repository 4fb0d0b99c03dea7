import logging
import math
import re
import sys
from contextlib import contextmanager
from decimal import Decimal
from types import MappingProxyType
from typing import Any, Callable, Iterator, Mapping, Optional, Sequence, Tuple, Union

logger = logging.getLogger('sexpeval')

DEFAULT_PROGRAM_PATH = 'example.lsp'

EXIT_CODE_MIN = -2**31
EXIT_CODE_MAX = 2**31 - 1

class LispError(RuntimeError):
  def __init__(self, message: str, *, callstack: Optional[list['Sexpr']] = None):
    super().__init__(message)
    self.message = message
    self.callstack = callstack

  def __str__(self) -> str:
    return f'Lisp Processing Error: {self.message}'

class Symbol:
  kind = 'Symbol'

  def __init__(self, value: str):
    self.value = value

  def __repr__(self) -> str:
    return f'Symbol({self.value!r})'

  def __str__(self) -> str:
    return self.external()

  def __hash__(self) -> int:
    return hash(self.value)

  def __eq__(self, o: object) -> bool:
    if not isinstance(o, Symbol):
      return False
    return o.value == self.value

  def external(self) -> str:
    return f'"{self.value}"'

class Number:
  kind = 'Number'

  def __init__(self, value: float):
    self.value = float(value)

  def __repr__(self) -> str:
    return f'Number({self.value!r})'

  def __str__(self) -> str:
    return self.external()

  def __hash__(self) -> int:
    return hash(self.value)

  def __eq__(self, o: object) -> bool:
    if not isinstance(o, Number):
      return False
    return o.value == self.value

  def external(self) -> str:
    if math.isnan(self.value):
      return 'NaN'
    if math.isinf(self.value):
      return repr(self.value)
    if self.value.is_integer():
      return str(int(self.value))
    return format(Decimal(repr(self.value)), 'f')

class List:
  kind = 'List'

  def __init__(self, items: Sequence['Sexpr'] = ()):
    self.items: Tuple['Sexpr', ...] = tuple(items)

  def __repr__(self) -> str:
    inner = ', '.join(repr(x) for x in self.items)
    return f'List([{inner}])'

  def __str__(self) -> str:
    return self.external()

  def __eq__(self, o: object) -> bool:
    if not isinstance(o, List):
      return False
    return o.items == self.items

  def __hash__(self) -> int:
    return hash(self.items)

  def __iter__(self) -> Iterator['Sexpr']:
    return iter(self.items)

  def __len__(self) -> int:
    return len(self.items)

  def __getitem__(self, i: int) -> 'Sexpr':
    return self.items[i]

  def external(self) -> str:
    inner = ' '.join(x.external() for x in self.items)
    return f'( {inner} )'

Atom = Union[Symbol, Number]
Sexpr = Union[Atom, List]

def is_atom(x: Sexpr) -> bool:
  return isinstance(x, Symbol) or isinstance(x, Number)

def is_sexpr(x: Any) -> bool:
  return is_atom(x) or isinstance(x, List)

def to_sexpr(value: Any) -> Sexpr:
  if is_sexpr(value):
    return value
  if isinstance(value, bool):
    raise LispError(f'cannot convert {value!r} to an expression')
  if isinstance(value, (int, float)):
    return Number(value)
  if isinstance(value, str):
    return Symbol(value)
  if isinstance(value, (list, tuple)):
    return List([to_sexpr(x) for x in value])
  raise LispError(f'cannot convert {value!r} to an expression')

def expect_symbol(x: Sexpr) -> str:
  if not isinstance(x, Symbol):
    raise LispError(f"`{x.external()}`\n{x!r}\nis not a symbol, it's a {x.kind}")
  return x.value

def expect_number(x: Sexpr) -> float:
  if not isinstance(x, Number):
    raise LispError(f"{x!r} is not a number, it's a {x.kind}")
  return x.value

# lexer

escape_table = {
  '"': '"',
  '\\': '\\',
  'n': '\n',
}

def tokenize(src: str) -> list[str]:
  _logger = logging.getLogger('sexpeval.lexer')
  tokens: list[str] = []
  buffer: list[str] = []
  in_string = False
  escaping = False

  def flush():
    tokens.append(''.join(buffer))
    buffer.clear()

  for c in src:
    if not in_string:
      if c in '()':
        flush()
        tokens.append(c)
      elif c in ' \n\t':
        flush()
      elif c == '"':
        in_string = True
      elif not c.isspace():
        buffer.append(c)
    elif escaping:
      if c not in escape_table:
        raise LispError(f"no special formatting for '\\{c}'")
      buffer.append(escape_table[c])
      escaping = False
    elif c == '"':
      flush()
      in_string = False
    elif c == '\\':
      escaping = True
    else:
      buffer.append(c)

  if in_string:
    raise LispError('unterminated string literal')
  flush()

  tokens = [t for t in tokens if t]
  _logger.debug('%d tokens', len(tokens))
  return tokens

# parser

number_pattern = re.compile(
  r'[+-]?(?:(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?|inf|infinity|nan)',
  re.IGNORECASE)

def parse_atom(token: str) -> Atom:
  if number_pattern.fullmatch(token):
    return Number(float(token))
  return Symbol(token)

def _parse_at(tokens: Sequence[str], i: int) -> Tuple[Sexpr, int]:
  if i >= len(tokens):
    raise LispError('could not get token')
  token = tokens[i]
  if token == '(':
    return _read_seq_at(tokens, i + 1)
  if token == ')':
    raise LispError('unexpected `)`')
  return parse_atom(token), i + 1

def _read_seq_at(tokens: Sequence[str], i: int) -> Tuple[List, int]:
  items: list[Sexpr] = []
  while True:
    if i >= len(tokens):
      raise LispError('could not find closing `)`')
    if tokens[i] == ')':
      return List(items), i + 1
    item, i = _parse_at(tokens, i)
    items.append(item)

def parse(tokens: Sequence[str]) -> Tuple[Sexpr, Sequence[str]]:
  sexpr, i = _parse_at(tokens, 0)
  return sexpr, tokens[i:]

def read_seq(tokens: Sequence[str]) -> Tuple[List, Sequence[str]]:
  sexpr, i = _read_seq_at(tokens, 0)
  return sexpr, tokens[i:]

def parse_program(src: str) -> Sexpr:
  _logger = logging.getLogger('sexpeval.parser')
  tokens = tokenize(src)
  try:
    root, rest = parse(tokens)
  except RecursionError as e:
    raise LispError('expression nested too deeply') from e
  if len(rest):
    raise LispError(f'not all tokens parsed: {list(rest)!r}')
  if _logger.isEnabledFor(logging.DEBUG):
    _logger.debug('parsed root %s', root.external())
  return root

# evaluator

class NativeFunction:
  def __init__(self, fn: Callable[..., Sexpr]):
    self.fn = fn

  def __repr__(self) -> str:
    return f'NativeFunction({self.fn.__name__})'

  def __call__(self, interpreter: 'Interpreter', *args: Sexpr) -> Sexpr:
    return self.fn(interpreter, *args)

class Interpreter:
  functions: Mapping[str, NativeFunction]
  callstack: list[Sexpr]

  def __init__(self):
    self.functions = MappingProxyType(builtin_functions())
    self.callstack = []

  @contextmanager
  def log_call(self, sexpr: Sexpr):
    self.callstack.append(sexpr)
    try:
      yield self
    except LispError as e:
      if e.callstack is None:
        e.callstack = self.callstack.copy()
      raise
    except Exception as e:
      raise LispError(str(e), callstack=self.callstack.copy()) from e
    finally:
      self.callstack.pop()

  def evaluate(self, sexpr: Sexpr) -> Sexpr:
    if not isinstance(sexpr, List):
      return sexpr

    _logger = logging.getLogger('sexpeval.eval')
    with self.log_call(sexpr):
      if not len(sexpr):
        raise LispError('could not get token')
      head, *args = sexpr
      name = expect_symbol(head)
      if name in self.functions:
        _logger.debug('dispatch %s with %d args', name, len(args))
        return self.functions[name](self, *args)
      if args:
        raise LispError(f'symbol {head} not defined as function so it takes arguments')
      return head

  def evaluate_all(self, args: Sequence[Sexpr]) -> list[Sexpr]:
    return [self.evaluate(arg) for arg in args]

def unpack(items: Sequence[Sexpr]) -> Tuple[Sexpr, Sequence[Sexpr]]:
  if not items:
    raise LispError('could not get token')
  return items[0], items[1:]

def divide(a: float, b: float) -> float:
  if b == 0:
    if a == 0 or math.isnan(a):
      return math.nan
    return math.copysign(math.inf, a) * math.copysign(1.0, b)
  return a / b

def numeric_fold(op: Callable[[float, float], float]):
  def fold(interpreter: Interpreter, *args: Sexpr) -> Sexpr:
    first, rest = unpack(interpreter.evaluate_all(args))
    acc = expect_number(first)
    for f in [expect_number(x) for x in rest]:
      acc = op(acc, f)
    return to_sexpr(acc)
  return fold

def print_fn(interpreter: Interpreter, *args: Sexpr) -> Sexpr:
  for item in interpreter.evaluate_all(args):
    print(item.external())
  return to_sexpr(0)

def debug_fn(interpreter: Interpreter, *args: Sexpr) -> Sexpr:
  for item in args:
    print(item.external())
  return to_sexpr(0)

def sequence_fn(interpreter: Interpreter, *args: Sexpr) -> Sexpr:
  results = interpreter.evaluate_all(args)
  if not results:
    raise LispError('`,` expects at least one argument')
  return results[-1]

def builtin_functions() -> dict[str, NativeFunction]:
  functions: dict[str, Callable[..., Sexpr]] = {
    '+': numeric_fold(lambda a, b: a + b),
    '-': numeric_fold(lambda a, b: a - b),
    '*': numeric_fold(lambda a, b: a * b),
    '/': numeric_fold(divide),
    'print': print_fn,
    "'": debug_fn,
    ',': sequence_fn,
  }
  return {name: NativeFunction(fn) for name, fn in functions.items()}

# entry point

def run(src: str, interpreter: Optional[Interpreter] = None) -> Sexpr:
  interpreter = interpreter or Interpreter()
  return interpreter.evaluate(parse_program(src))

def exit_code(result: Sexpr) -> int:
  try:
    value = expect_number(result)
  except LispError as e:
    raise LispError(f"code didn't exit with number: {e.message}") from e
  if not math.isfinite(value):
    raise LispError(f'code exited with non-finite number {result.external()}')
  code = int(value)
  if not EXIT_CODE_MIN <= code <= EXIT_CODE_MAX:
    raise LispError(f'exit code {code} does not fit in a signed 32-bit integer')
  return code

def stringify_callstack(callstack: Sequence[Sexpr]) -> str:
  base_indent = len(str(len(callstack)))
  return '\n'.join(f'{i: >{base_indent}}. {sexpr.external()}' for i, sexpr in enumerate(callstack))

def read_program(path: str) -> str:
  if path == '-':
    return sys.stdin.read()
  try:
    with open(path, 'r') as f:
      return f.read()
  except OSError as e:
    raise LispError(f'could not read {path}: {e.strerror}') from e

def main(argv: Optional[list[str]] = None) -> int:
  argv = sys.argv[1:] if argv is None else argv
  verbose = '-v' in argv or '--verbose' in argv
  paths = [a for a in argv if a not in ('-v', '--verbose')]

  logging.basicConfig()
  logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
  _logger = logging.getLogger('sexpeval.main')

  path = paths[0] if paths else DEFAULT_PROGRAM_PATH
  try:
    result = run(read_program(path))
    code = exit_code(result)
  except LispError as e:
    if e.callstack:
      print(stringify_callstack(e.callstack), file=sys.stderr)
    print(e, file=sys.stderr)
    return 1
  _logger.info('%s exited with %d', path, code)
  return code

if __name__ == '__main__':
  sys.exit(main())
