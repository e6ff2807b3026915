import argparse
import datetime
import logging
import logging.handlers
import os
import pathlib
import shlex
import stat
import sys
import typing
import requests
import heroic
import steam
from games import GameRef, LauncherError, NotFoundError, Runner, StoreKind
from settings import HeroicStore, SeventhHeaven, Settings, SteamStore, get_settings, save_settings
from update import download_latest, release_url

FF7_APPID = 39140
FF7_2026_APPID = 3837340
FF7_GOG_APPID = 1698970154
SEVENTH_HEAVEN_REPO = 'tsunamods-codes/7th-Heaven'
SEVENTH_HEAVEN_EXE = pathlib.PurePath('7th Heaven.exe')
LAUNCH_SCRIPT = pathlib.PurePath('Launch 7th Heaven')
INSTALL_LOG = '7thHeaven.log'

def main():
   parser = argparse.ArgumentParser()
   parser.add_argument('--settings', type=pathlib.Path, default=pathlib.Path(__file__).parent / 'settings.yaml')
   parser.add_argument('--verbose', action='store_true')
   commands = parser.add_subparsers(dest='command', required=True)
   commands.add_parser('install')
   launch_parser = commands.add_parser('launch')
   launch_parser.add_argument('args', nargs=argparse.REMAINDER)
   commands.add_parser('runner')
   commands.add_parser('wipe-prefix')
   commands.add_parser('wipe-install')
   commands.add_parser('play')
   commands.add_parser('validate')
   args = parser.parse_args()
   settings_path: pathlib.Path = args.settings
   if not settings_path.exists():
      initial_run(settings_path)
      return
   settings = get_settings(settings_path)
   setup_logging(logging.DEBUG if args.verbose else logging.INFO, settings.log_file)
   try:
      run_command(args, settings, settings_path)
   except (LauncherError, requests.RequestException) as e:
      print(f'Error: {e}')
      sys.exit(1)

def run_command(args: argparse.Namespace, settings: Settings, settings_path: pathlib.Path):
   match args.command:
      case 'install':
         install(settings, settings_path)
      case 'launch':
         launch(settings, settings_path, args.args)
      case 'runner':
         game, runner = get_game(settings, settings_path)
         print(f'{game.name} ({game.app_id}) runs with {runner.display_name} ({runner.id})')
         print(f'Runner bin: {runner.binary_path}')
         if runner.runtime is not None:
            print(f'Runtime: {runner.runtime.display_name} at {runner.runtime.root_path}')
         print(f'Prefix: {game.prefix_path}')
      case 'wipe-prefix':
         game, _library = get_steam_game(settings)
         if confirm(f'This will permanently delete the prefix at \'{game.prefix_path}\'. Continue? (y/n)'):
            steam.wipe_prefix(game)
      case 'wipe-install':
         game, _library = get_steam_game(settings)
         if confirm(f'This will permanently delete the game files at \'{game.install_path}\'. Continue? (y/n)'):
            steam.wipe_install(game)
      case 'play':
         game, _library = get_steam_game(settings)
         steam.launch_game(game)
      case 'validate':
         game, _library = get_steam_game(settings)
         steam.validate_game(game)

def setup_logging(level: int, log_file: pathlib.Path | None):
   root = logging.getLogger()
   root.setLevel(logging.DEBUG)
   console = logging.StreamHandler(sys.stderr)
   console.setLevel(level)
   console.setFormatter(logging.Formatter('%(levelname)s %(name)s: %(message)s'))
   root.addHandler(console)
   if log_file is not None:
      log_file.parent.mkdir(parents=True, exist_ok=True)
      file_handler = logging.handlers.RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5, encoding='utf-8')
      file_handler.setLevel(logging.DEBUG)
      file_handler.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(name)s: %(message)s'))
      root.addHandler(file_handler)
   logging.getLogger('urllib3').setLevel(logging.WARNING)

def get_steam_game(settings: Settings) -> tuple[GameRef, steam.SteamLibrary]:
   if settings.store != 'steam' or (store := settings.steam) is None:
      raise NotFoundError('Steam not configured in settings')
   library = steam.SteamLibrary.locate() if store.folder is None else steam.SteamLibrary.from_dir(store.folder)
   return (steam.get_game(store.app_id, library), library)

def get_game(settings: Settings, settings_path: pathlib.Path) -> tuple[GameRef, Runner]:
   match settings.store:
      case 'steam':
         game, library = get_steam_game(settings)
         runner = steam.resolve_runner(game, library)
         assert settings.steam is not None
         if settings.steam.runner != runner.id:
            settings.steam.runner = runner.id
            save_settings(settings, settings_path)
         return (game, runner)
      case 'heroic':
         if (store := settings.heroic) is None:
            raise NotFoundError('Heroic not configured in settings')
         return heroic.get_game(store.app_id, store.name, store.folder)

def run_in_prefix(game: GameRef, runner: Runner, exe: pathlib.Path, args: typing.Sequence[str] = ()) -> int:
   match game.store:
      case 'steam':
         return steam.run_in_prefix(exe, game, runner, args)
      case 'heroic':
         return heroic.run_in_prefix(exe, game, runner, args)

def windows_path(path: pathlib.Path) -> str:
   return 'Z:' + str(path.absolute()).replace('/', '\\')

def cache_folder() -> pathlib.Path:
   cache_home = os.environ.get('XDG_CACHE_HOME')
   return (pathlib.Path(cache_home) if cache_home else pathlib.Path.home() / '.cache') / 'ff7-linux'

def check_installer(seventh_heaven: SeventhHeaven, settings: Settings, settings_path: pathlib.Path) -> pathlib.Path:
   if seventh_heaven.update != False or seventh_heaven.installer is None or not seventh_heaven.installer.exists():
      print('Checking for 7th Heaven updates...')
      downloaded = download_latest(
         last_date = seventh_heaven.update if isinstance(seventh_heaven.update, datetime.datetime) else None,
         url = release_url(seventh_heaven.repo, seventh_heaven.prerelease),
         asset_filter = lambda x: x['name'].endswith('.exe'),
         destination_folder = cache_folder()
      )
      if downloaded is not None:
         (asset_date, installer) = downloaded
         seventh_heaven.installer = installer
         if seventh_heaven.update != False:
            seventh_heaven.update = asset_date
         save_settings(settings, settings_path)
   if seventh_heaven.installer is None or not seventh_heaven.installer.exists():
      raise NotFoundError('No 7th Heaven installer was downloaded')
   return seventh_heaven.installer

def install(settings: Settings, settings_path: pathlib.Path):
   seventh_heaven = settings.seventh_heaven
   installer = check_installer(seventh_heaven, settings, settings_path)
   print('Finding FF7...')
   game, runner = get_game(settings, settings_path)
   print(f'Using runner: {runner.display_name} ({runner.id})')
   seventh_heaven.folder.mkdir(parents=True, exist_ok=True)
   print(f'Installing 7th Heaven to \'{seventh_heaven.folder}\'')
   run_in_prefix(game, runner, installer.resolve(), [
      '/VERYSILENT',
      f'/DIR={windows_path(seventh_heaven.folder)}',
      f'/LOG={INSTALL_LOG}',
   ])
   make_launch(seventh_heaven.folder / LAUNCH_SCRIPT, settings_path)
   print(f'7th Heaven successfully installed to \'{seventh_heaven.folder}\'')

def launch(settings: Settings, settings_path: pathlib.Path, args: list[str]):
   exe = settings.seventh_heaven.folder / SEVENTH_HEAVEN_EXE
   if not exe.exists():
      raise NotFoundError(f'Couldn\'t find \'{exe}\'!')
   game, runner = get_game(settings, settings_path)
   print(f'Found runner: {runner.id}')
   run_in_prefix(game, runner, exe, args)

def make_launch(launch_path: pathlib.Path, settings_path: pathlib.Path):
   script = pathlib.Path(__file__).resolve()
   launch_path.parent.mkdir(parents=True, exist_ok=True)
   with open(launch_path, 'w', encoding='utf-8') as sh_file:
      sh_file.writelines([
         '#!/bin/sh\n',
         f'exec {shlex.quote(sys.executable)} {shlex.quote(str(script))} --settings {shlex.quote(str(settings_path.resolve()))} launch "$@"\n',
      ])
   filestat = launch_path.stat()
   launch_path.chmod(filestat.st_mode | stat.S_IEXEC)

def initial_run(settings_path: pathlib.Path) -> Settings:
   print('First-time run, welcome!')
   print('You\'ll be asked some questions about your setup. Your answers are saved to settings.yaml, which you can edit or delete at any time.')
   print()
   store = choose_store()
   steam_store = None
   heroic_store = None
   match store:
      case 'steam':
         steam_store = input_steam_store()
      case 'heroic':
         print('Input the folder where FINAL FANTASY VII is installed.')
         folder = input_game_path('FINAL FANTASY VII', pathlib.PurePath('ff7_en.exe'))
         heroic_store = HeroicStore(folder=folder, app_id=FF7_GOG_APPID, name='FINAL FANTASY VII')
   print('Now where would you like to install 7th Heaven?')
   folder = pathlib.Path(os.path.expanduser(input('> ')))
   print('Use 7th Heaven pre-releases? (y/n)')
   prerelease = yes_no()
   settings = Settings(
      store = store,
      steam = steam_store,
      heroic = heroic_store,
      seventh_heaven = SeventhHeaven(
         folder = folder / '7th Heaven',
         installer = None,
         repo = SEVENTH_HEAVEN_REPO,
         prerelease = prerelease,
         update = True,
      ),
      log_file = settings_path.parent / 'ff7.log',
   )
   save_settings(settings, settings_path)
   print(f'Settings saved to \'{settings_path}\'. Run \'install\' to install 7th Heaven.')
   return settings

def choose_store() -> StoreKind:
   print('Which launcher is FINAL FANTASY VII installed with? (steam/heroic)')
   while True:
      answer = input('> ').strip().lower()
      if answer == 'steam' or answer == 'heroic':
         return answer
      print('Type steam or heroic')

def input_steam_store() -> SteamStore:
   folder: pathlib.Path | None = None
   try:
      library = steam.SteamLibrary.locate()
      print(f'Found Steam at \'{library.root}\'')
   except LauncherError:
      print('Couldn\'t find Steam. Input the folder where Steam is installed.')
      while True:
         folder = pathlib.Path(os.path.expanduser(input('> ')))
         try:
            library = steam.SteamLibrary.from_dir(folder)
            break
         except LauncherError as e:
            print(f'{e}. Please try again.')
   for app_id in (FF7_APPID, FF7_2026_APPID):
      try:
         app = library.find_app(app_id)
      except NotFoundError:
         continue
      print(f'Found {app.name} ({app_id})')
      return SteamStore(folder=folder, app_id=app_id, runner=None)
   print('FINAL FANTASY VII isn\'t installed in Steam yet, defaulting to app 39140')
   return SteamStore(folder=folder, app_id=FF7_APPID, runner=None)

def confirm(message: str) -> bool:
   print(message)
   if yes_no():
      return True
   print('Understood. Exiting.')
   return False

def yes_no():
   while True:
      answer = input('> ')
      if answer in ('y','Y'):
         return True
      if answer in ('n','N'):
         return False
      print('Type Y for yes, or N for no')

def input_game_path(name: str, exe: pathlib.PurePath) -> pathlib.Path:
   print(name + ':')
   while True:
      install = input('> ')
      install_path = pathlib.Path(os.path.expanduser(install))
      if (install_path / exe).exists():
         return install_path
      print(f'Couldn\'t find \'{exe}\' in that folder. Please try again.')

if __name__ == '__main__':
   main()
