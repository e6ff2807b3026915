import dataclasses
import pathlib
import typing

StoreKind = typing.Literal['steam', 'heroic']

# 7th Heaven loads through a native dinput.dll
DLL_OVERRIDES = 'dinput.dll=n,b'

@dataclasses.dataclass(frozen=True)
class Runtime:
   id: str
   display_name: str
   root_path: pathlib.Path

@dataclasses.dataclass(frozen=True)
class Runner:
   id: str
   display_name: str
   binary_path: pathlib.Path
   runtime: typing.Optional[Runtime] = None

@dataclasses.dataclass(frozen=True)
class GameRef:
   store: StoreKind
   app_id: int
   name: str
   install_path: pathlib.Path
   prefix_path: pathlib.Path
   client_root: typing.Optional[pathlib.Path] = None

@dataclasses.dataclass(frozen=True)
class Binding:
   name: str

class LauncherError(Exception):
   pass

class NotFoundError(LauncherError):
   pass

class MalformedStructureError(LauncherError):
   def __init__(self, path: pathlib.Path, message: str, field: typing.Optional[str] = None):
      self.path = path
      self.field = field
      super().__init__(f'{path}: {message}')

   @classmethod
   def missing_field(cls, path: pathlib.Path, field: str) -> 'MalformedStructureError':
      return cls(path, f'missing field {field}', field=field)

class IoFailureError(LauncherError):
   pass

class NoCompatibleRunnerFoundError(LauncherError):
   pass

class UnsafeDeletionTargetError(LauncherError):
   pass

class ChildProcessFailedError(LauncherError):
   def __init__(self, program: pathlib.PurePath, returncode: int):
      self.program = program
      self.returncode = returncode
      super().__init__(f'{program.name} exited with status {returncode}')
