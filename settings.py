import mashumaro.codecs.yaml
import dataclasses
import typing
import pathlib
import datetime
from games import StoreKind

@dataclasses.dataclass
class SteamStore:
   folder: typing.Optional[pathlib.Path]
   app_id: int
   runner: typing.Optional[str]

@dataclasses.dataclass
class HeroicStore:
   folder: pathlib.Path
   app_id: int
   name: str

@dataclasses.dataclass
class SeventhHeaven:
   folder: pathlib.Path
   installer: typing.Optional[pathlib.Path]
   repo: str
   prerelease: bool
   update: bool | datetime.datetime

@dataclasses.dataclass
class Settings:
   store: StoreKind
   steam: typing.Optional[SteamStore]
   heroic: typing.Optional[HeroicStore]
   seventh_heaven: SeventhHeaven
   log_file: typing.Optional[pathlib.Path]

def save_settings(settings: Settings, path: pathlib.Path):
   with open(path, 'w', encoding='utf-8') as data_file:
      data = mashumaro.codecs.yaml.encode(settings, Settings)
      assert isinstance(data, str)
      data_file.write(data)

def get_settings(path: pathlib.Path) -> Settings:
   with open(path, 'r', encoding='utf-8') as data_file:
      data = data_file.read()
      settings = mashumaro.codecs.yaml.decode(data, Settings)
      return settings
