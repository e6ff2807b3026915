import dataclasses
import logging
import math
import os
import pathlib
import re
import shutil
import subprocess
import threading
import typing
import vdf
from games import DLL_OVERRIDES, Binding, ChildProcessFailedError, GameRef, IoFailureError, LauncherError, MalformedStructureError, NoCompatibleRunnerFoundError, NotFoundError, Runner, Runtime, UnsafeDeletionTargetError

logger = logging.getLogger(__name__)

STEAM_CANDIDATES: list[pathlib.PurePath] = [
   pathlib.PurePath('.steam/steam'),
   pathlib.PurePath('.local/share/Steam'),
   pathlib.PurePath('.var/app/com.valvesoftware.Steam/data/Steam'),
]
CONFIG_VDF = pathlib.PurePath('config/config.vdf')
COMPAT_DATA = 'compatdata'
COMMON = 'common'
VENDOR_PREFIX = 'Proton'
COMPAT_PRIORITY = '250'
COMPAT_SECTION = re.compile(r'"CompatToolMapping"\s*\{')

@dataclasses.dataclass(frozen=True)
class SteamApp:
   app_id: int
   name: str
   install_dir: str
   library_path: pathlib.Path

   @property
   def install_path(self) -> pathlib.Path:
      return self.library_path / 'steamapps' / COMMON / self.install_dir

class SteamLibrary:
   """One Steam installation and every library folder it knows about.

   Build it once per run and pass it to whatever needs to look up apps.
   """
   def __init__(self, root: pathlib.Path, library_paths: list[pathlib.Path]):
      self.root = root
      self.library_paths = library_paths

   @classmethod
   def from_dir(cls, root: pathlib.Path) -> 'SteamLibrary':
      if not (root / 'steamapps').is_dir():
         raise NotFoundError(f'{root} is not a Steam installation, it has no steamapps folder')
      library_paths = [root]
      folders_vdf = root / 'steamapps/libraryfolders.vdf'
      try:
         with open(folders_vdf, 'r', encoding='utf-8', errors='replace') as vdf_file:
            data = vdf.load(vdf_file)
      except FileNotFoundError:
         data = {}
      except OSError as e:
         raise IoFailureError(f'Couldn\'t read {folders_vdf}: {e}') from e
      except SyntaxError as e:
         raise MalformedStructureError(folders_vdf, f'not valid VDF ({e})') from e
      seen = {root.resolve()}
      for key, value in data.get('libraryfolders', {}).items():
         if not key.isdigit():
            continue
         # older clients store the bare path instead of an object
         folder = value.get('path') if isinstance(value, dict) else value
         if not isinstance(folder, str):
            continue
         path = pathlib.Path(folder)
         if path.resolve() in seen:
            continue
         seen.add(path.resolve())
         library_paths.append(path)
      logger.debug('Found %d Steam library folders', len(library_paths))
      return cls(root, library_paths)

   @classmethod
   def locate(cls) -> 'SteamLibrary':
      if (steam_dir := os.environ.get('STEAM_DIR')):
         return cls.from_dir(pathlib.Path(steam_dir))
      home = pathlib.Path.home()
      for candidate in STEAM_CANDIDATES:
         if (home / candidate / 'steamapps').is_dir():
            logger.info('Found Steam directory at %s', home / candidate)
            return cls.from_dir(home / candidate)
      raise NotFoundError('Couldn\'t find a Steam installation, set STEAM_DIR to point at one')

   def apps(self) -> typing.Iterator[SteamApp]:
      for library_path in self.library_paths:
         steamapps = library_path / 'steamapps'
         if not steamapps.is_dir():
            logger.warning('Steam library %s has no steamapps folder', library_path)
            continue
         for manifest in sorted(steamapps.glob('appmanifest_*.acf')):
            if (app := read_appmanifest(manifest, library_path)) is not None:
               yield app

   def find_app(self, app_id: int) -> SteamApp:
      for library_path in self.library_paths:
         manifest = library_path / 'steamapps' / f'appmanifest_{app_id}.acf'
         if manifest.is_file() and (app := read_appmanifest(manifest, library_path)) is not None:
            return app
      raise NotFoundError(f'Couldn\'t find app with ID {app_id}')

def _lookup(data: dict[str, typing.Any], key: str) -> typing.Any:
   # appmanifests written by older clients use 'appID' and 'AppState'
   for name, value in data.items():
      if name.lower() == key:
         return value
   return None

def read_appmanifest(path: pathlib.Path, library_path: pathlib.Path) -> typing.Optional[SteamApp]:
   try:
      with open(path, 'r', encoding='utf-8') as manifest_file:
         data = vdf.load(manifest_file)
   except (OSError, UnicodeDecodeError, SyntaxError) as e:
      logger.warning('Skipping malformed appmanifest %s: %s', path, e)
      return None
   state = _lookup(data, 'appstate')
   if not isinstance(state, dict):
      logger.info('Skipping empty appmanifest %s', path)
      return None
   app_id = _lookup(state, 'appid')
   name = _lookup(state, 'name')
   install_dir = _lookup(state, 'installdir')
   if not isinstance(name, str) or not isinstance(install_dir, str) or not str(app_id).isdigit():
      logger.warning('Skipping incomplete appmanifest %s', path)
      return None
   return SteamApp(app_id=int(app_id), name=name, install_dir=install_dir, library_path=library_path)

def get_game(app_id: int, library: SteamLibrary) -> GameRef:
   logger.info('Located Steam installation: %s', library.root)
   app = library.find_app(app_id)
   return GameRef(
      store = 'steam',
      app_id = app_id,
      name = app.name,
      install_path = app.install_path,
      prefix_path = app.library_path / 'steamapps' / COMPAT_DATA / str(app_id) / 'pfx',
      client_root = library.root,
   )

def runner_rank(runner: Runner) -> tuple[int, int]:
   """Heuristic sort key for Proton builds.

   'Proton 8.0-5' ranks (8000, 0). Builds without a number in the second word
   rank (0, 2) for Experimental, (0, 1) for Hotfix and (0, 0) otherwise, so any
   numbered release outranks them. Names are human-authored; this is not a
   general version comparison.
   """
   parts = runner.display_name.split()
   if len(parts) < 2 or parts[0] != VENDOR_PREFIX:
      return (0, 0)
   version = parts[1].split('-')[0]
   try:
      number = float(version)
   except ValueError:
      number = math.nan
   if math.isfinite(number):
      return (int(number * 1000), 0)
   if 'experimental' in version.lower():
      return (0, 2)
   if 'hotfix' in version.lower():
      return (0, 1)
   return (0, 0)

def compare_runners(a: Runner, b: Runner) -> int:
   rank_a, rank_b = runner_rank(a), runner_rank(b)
   return (rank_a > rank_b) - (rank_a < rank_b)

def find_highest_version(runners: list[Runner]) -> typing.Optional[Runner]:
   # equal ranks resolve to the later catalog entry
   return max(reversed(runners), key=runner_rank, default=None)

def runner_id(display_name: str) -> str:
   return display_name.lower().split('.')[0].replace(' ', '_')

def resolve_runtime(runner: Runner, library: SteamLibrary) -> Runtime:
   manifest = runner.binary_path.parent / 'toolmanifest.vdf'
   try:
      with open(manifest, 'r', encoding='utf-8') as manifest_file:
         data = vdf.load(manifest_file, mapper=vdf.VDFDict)
   except FileNotFoundError as e:
      raise NotFoundError(f'No tool manifest at {manifest}') from e
   except OSError as e:
      raise IoFailureError(f'Couldn\'t read {manifest}: {e}') from e
   except (UnicodeDecodeError, SyntaxError) as e:
      raise MalformedStructureError(manifest, f'not valid VDF ({e})') from e
   section = data.get('manifest')
   if not isinstance(section, vdf.VDFDict):
      raise MalformedStructureError.missing_field(manifest, 'manifest')
   values = section.get_all_for('require_tool_appid')
   if not values:
      raise NotFoundError(f'{manifest} has no require_tool_appid')
   try:
      tool_appid = int(values[0])
   except (TypeError, ValueError) as e:
      raise MalformedStructureError(manifest, f'require_tool_appid {values[0]!r} is not a number', field='require_tool_appid') from e
   app = library.find_app(tool_appid)
   return Runtime(id=app.name, display_name=app.name, root_path=app.install_path)

def find_all_runners(library: SteamLibrary) -> list[Runner]:
   runners: list[Runner] = []
   for app in library.apps():
      if VENDOR_PREFIX not in app.name:
         continue
      proton = app.install_path / 'proton'
      if not proton.is_file():
         logger.info('Does not contain proton bin: %s', proton)
         continue
      runner = Runner(id=runner_id(app.name), display_name=app.name, binary_path=proton)
      try:
         runtime = resolve_runtime(runner, library)
      except LauncherError as e:
         logger.warning('No runtime for %s: %s', app.name, e)
      else:
         runner = dataclasses.replace(runner, runtime=runtime)
      runners.append(runner)
   if not runners:
      raise NoCompatibleRunnerFoundError(f'No Proton versions found in {library.root}')
   return runners

def config_path(client_root: pathlib.Path) -> pathlib.Path:
   return client_root / CONFIG_VDF

def _read_config(path: pathlib.Path) -> str:
   # surrogateescape and newline='' keep bytes we don't touch identical on write
   try:
      with open(path, 'r', encoding='utf-8', errors='surrogateescape', newline='') as config_file:
         return config_file.read()
   except FileNotFoundError as e:
      raise NotFoundError(f'Steam config not found at {path}') from e
   except OSError as e:
      raise IoFailureError(f'Couldn\'t read {path}: {e}') from e

def read_binding(client_root: pathlib.Path, app_id: int) -> Binding:
   path = config_path(client_root)
   content = _read_config(path)
   section = COMPAT_SECTION.search(content)
   if section is None:
      raise NotFoundError(f'No CompatToolMapping section in {path}')
   entry = re.compile(rf'"{app_id}"\s*\{{[^}}]*?"name"\s*"([^"]*)"').search(content, section.end())
   if entry is None:
      raise NotFoundError(f'No compatibility tool set for app {app_id} in {path}')
   return Binding(name=entry.group(1))

def compat_block(app_id: int, name: str) -> str:
   return ''.join([
      '"CompatToolMapping"\n',
      '                {\n',
      f'                    "{app_id}"\n',
      '                    {\n',
      f'                        "name"\t\t"{name}"\n',
      '                        "config"\t\t""\n',
      f'                        "priority"\t\t"{COMPAT_PRIORITY}"\n',
      '                    }\n',
   ])

def write_binding(client_root: pathlib.Path, app_id: int, name: str):
   path = config_path(client_root)
   content = _read_config(path)
   stale = re.compile(rf'"{app_id}"[^{{]*\{{[^}}]*"name"[^}}]*\}}')
   content = stale.sub('', content, count=1)
   block = compat_block(app_id, name)
   content, inserted = COMPAT_SECTION.subn(lambda _match: block, content, count=1)
   if inserted == 0:
      raise MalformedStructureError(path, 'no CompatToolMapping section to add a runner to')
   try:
      with open(path, 'w', encoding='utf-8', errors='surrogateescape', newline='') as config_file:
         config_file.write(content)
   except OSError as e:
      raise IoFailureError(f'Couldn\'t write to {path}: {e}') from e
   logger.info('Successfully set runner for %s to %s', app_id, name)

def resolve_runner(game: GameRef, library: SteamLibrary) -> Runner:
   if game.client_root is None:
      raise NotFoundError(f'{game.name} has no Steam client path')
   try:
      binding: typing.Optional[Binding] = read_binding(game.client_root, game.app_id)
   except NotFoundError as e:
      logger.info('%s', e)
      binding = None
   runners = find_all_runners(library)
   if binding is not None:
      for runner in runners:
         if runner.id == binding.name:
            logger.info('Runner set for %s: %s', game.name, runner.display_name)
            return runner
      logger.warning('Configured runner %s for app %s is not installed', binding.name, game.app_id)
   logger.info('No runner configured for app %s, setting highest version', game.app_id)
   runner = find_highest_version(runners)
   assert runner is not None
   try:
      write_binding(game.client_root, game.app_id, runner.id)
   except LauncherError as e:
      logger.warning('Failed to set runner for app %s: %s', game.app_id, e)
   else:
      logger.info('Set runner to \'%s\' for app %s', runner.display_name, game.app_id)
   return runner

def _drain(stream: typing.IO[bytes], level: int):
   with stream:
      for line in stream:
         logger.log(level, '[wine] %s', line.decode('utf-8', errors='replace').rstrip('\r\n'))

def run_in_prefix(exe: pathlib.Path, game: GameRef, runner: typing.Optional[Runner], args: typing.Sequence[str] = ()) -> int:
   if runner is None:
      raise NotFoundError(f'{game.name} has no runner')
   if runner.runtime is None:
      raise NotFoundError(f'Runner {runner.display_name} has no runtime')
   if game.client_root is None:
      raise NotFoundError(f'{game.name} has no Steam client path')
   run = runner.runtime.root_path / 'run'
   logger.info('Proton bin: %s', runner.binary_path)
   logger.info('%s path: %s', runner.runtime.display_name, run)
   env: dict[str, str] = dict(os.environ)
   env['STEAM_COMPAT_CLIENT_INSTALL_PATH'] = str(game.client_root)
   env['STEAM_COMPAT_DATA_PATH'] = str(game.prefix_path.parent)
   env['WINEDLLOVERRIDES'] = DLL_OVERRIDES
   cmds = [str(run), '--', str(runner.binary_path), 'waitforexitandrun', str(exe)]
   for arg in args:
      logger.info('run_in_prefix arg: %s', arg)
      cmds.append(arg)
   try:
      process = subprocess.Popen(cmds, env=env, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
   except OSError as e:
      raise IoFailureError(f'Couldn\'t start {run}: {e}') from e
   logger.info('Launched %s', exe.name)
   assert process.stdout is not None and process.stderr is not None
   drains = [
      threading.Thread(target=_drain, args=(process.stdout, logging.INFO), daemon=True),
      threading.Thread(target=_drain, args=(process.stderr, logging.WARNING), daemon=True),
   ]
   for drain in drains:
      drain.start()
   try:
      returncode = process.wait()
   finally:
      for drain in drains:
         drain.join()
   if returncode != 0:
      logger.error('Process exited with an error: %s', returncode)
      raise ChildProcessFailedError(exe, returncode)
   logger.info('Process exited successfully')
   return returncode

def _wipe(path: pathlib.Path, fragment: str) -> bool:
   if not path.is_dir():
      logger.info('%s doesn\'t exist. Continuing.', path)
      return False
   if fragment not in str(path):
      raise UnsafeDeletionTargetError(f'{path} does not contain {fragment}')
   logger.info('Deleting path: %s', path)
   try:
      shutil.rmtree(path)
   except OSError as e:
      raise IoFailureError(f'Couldn\'t delete {path}: {e}') from e
   return True

def wipe_prefix(game: GameRef) -> bool:
   wiped = _wipe(game.prefix_path, f'{COMPAT_DATA}/{game.app_id}/pfx')
   if wiped:
      logger.info('Wiped prefix for app_id: %s', game.app_id)
   return wiped

def wipe_install(game: GameRef) -> bool:
   wiped = _wipe(game.install_path, f'{COMMON}/{game.name}')
   if wiped:
      logger.info('Wiped install folder for app_id: %s', game.app_id)
   return wiped

def _open_steam_url(url: str):
   logger.info('Running command: steam %s', url)
   try:
      subprocess.Popen(['steam', url], stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, start_new_session=True)
   except OSError as e:
      raise IoFailureError(f'Couldn\'t run steam: {e}') from e

def launch_game(game: GameRef):
   _open_steam_url(f'steam://rungameid/{game.app_id}')
   logger.info('Launched %s', game.name)

def validate_game(game: GameRef):
   _open_steam_url(f'steam://validate/{game.app_id}')
   logger.info('Validating %s', game.name)
