import dataclasses
import json
import logging
import os
import pathlib
import subprocess
import typing
from games import DLL_OVERRIDES, GameRef, IoFailureError, MalformedStructureError, NotFoundError, Runner

logger = logging.getLogger(__name__)

FLATPAK_CONFIG = pathlib.PurePath('.var/app/com.heroicgameslauncher.hgl/config/heroic')

@dataclasses.dataclass(frozen=True)
class HeroicBinding:
   wine_prefix: pathlib.Path
   runner: Runner

def get_config_path() -> pathlib.Path:
   """Heroic's config folder, falling back to the flatpak install if the native one is missing."""
   home = pathlib.Path.home()
   config_home = os.environ.get('XDG_CONFIG_HOME')
   path = (pathlib.Path(config_home) if config_home else home / '.config') / 'heroic'
   if not path.is_dir():
      logger.info('Heroic - Attempting to fall back to flatpak')
      path = home / FLATPAK_CONFIG
   return path

def game_config_path(config_path: pathlib.Path, app_id: int) -> pathlib.Path:
   return config_path / 'GamesConfig' / f'{app_id}.json'

def _field(data: typing.Any, key: str, kind: type, path: pathlib.Path, label: typing.Optional[str] = None) -> typing.Any:
   value = data.get(key) if isinstance(data, dict) else None
   if not isinstance(value, kind):
      raise MalformedStructureError.missing_field(path, label or key)
   return value

def wine_runner(runner: Runner) -> Runner:
   # a proton build's 'bin' is the proton script, wine itself lives under files/
   if runner.id == 'proton':
      return dataclasses.replace(runner, binary_path=runner.binary_path.parent / 'files/bin/wine')
   return runner

def read_binding(app_id: int, config_path: typing.Optional[pathlib.Path] = None) -> HeroicBinding:
   if config_path is None:
      config_path = get_config_path()
   path = game_config_path(config_path, app_id)
   try:
      with open(path, 'r', encoding='utf-8') as game_file:
         root = json.load(game_file)
   except FileNotFoundError as e:
      raise NotFoundError(f'No Heroic game config at {path}') from e
   except OSError as e:
      raise IoFailureError(f'Couldn\'t read {path}: {e}') from e
   except (UnicodeDecodeError, json.JSONDecodeError) as e:
      raise MalformedStructureError(path, f'not valid JSON ({e})') from e
   game = _field(root, str(app_id), dict, path)
   prefix = _field(game, 'winePrefix', str, path)
   wine_version = _field(game, 'wineVersion', dict, path)
   runner = Runner(
      id = _field(wine_version, 'type', str, path, 'wineVersion.type'),
      display_name = _field(wine_version, 'name', str, path, 'wineVersion.name'),
      binary_path = pathlib.Path(_field(wine_version, 'bin', str, path, 'wineVersion.bin')),
   )
   return HeroicBinding(wine_prefix=pathlib.Path(prefix), runner=wine_runner(runner))

def get_game(app_id: int, name: str, install_path: pathlib.Path, config_path: typing.Optional[pathlib.Path] = None) -> tuple[GameRef, Runner]:
   binding = read_binding(app_id, config_path)
   game = GameRef(
      store = 'heroic',
      app_id = app_id,
      name = name,
      install_path = install_path,
      prefix_path = binding.wine_prefix,
   )
   return (game, binding.runner)

def run_in_prefix(exe: pathlib.Path, game: GameRef, runner: typing.Optional[Runner], args: typing.Sequence[str] = ()) -> int:
   if runner is None:
      raise NotFoundError(f'{game.name} has no runner')
   logger.info('Using runner: %s', runner.display_name)
   logger.info('Runner bin: %s', runner.binary_path)
   logger.info('Wine prefix: %s', game.prefix_path)
   env: dict[str, str] = dict(os.environ)
   env['WINEPREFIX'] = str(game.prefix_path)
   env['WINEDLLOVERRIDES'] = DLL_OVERRIDES
   cmds = [str(runner.binary_path), str(exe)]
   for arg in args:
      logger.info('run_in_prefix arg: %s', arg)
      cmds.append(arg)
   try:
      result = subprocess.run(cmds, env=env, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
   except OSError as e:
      raise IoFailureError(f'Couldn\'t start {runner.binary_path}: {e}') from e
   logger.info('Launched %s', exe.name)
   return result.returncode
