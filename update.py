import datetime
import json
import pathlib
import typing
import requests

def release_url(repo: str, prerelease: bool) -> str:
   if prerelease:
      return f'https://api.github.com/repos/{repo}/releases'
   return f'https://api.github.com/repos/{repo}/releases/latest'

def parse_date(value: str) -> datetime.datetime:
   return datetime.datetime.fromisoformat(value.replace('Z', '+00:00'))

def download_latest(
   last_date: datetime.datetime | None,
   url: str,
   asset_filter: typing.Callable[[dict[str, typing.Any]], bool],
   destination_folder: pathlib.Path
) -> tuple[datetime.datetime, pathlib.Path] | None:
   response = requests.get(url, timeout=10)
   if response.status_code != 200:
      print(f'Error {response.status_code}!')
      try:
         print(json.loads(response.text)['message'])
      except (json.JSONDecodeError, KeyError, TypeError):
         print(response.text)
      if not destination_folder.exists():
         response.raise_for_status()
      return None
   if url.endswith('/releases'):
      newest: datetime.datetime | None = None
      release: dict[str, typing.Any] | None = None
      releases: list[dict[str, typing.Any]] = json.loads(response.text)
      for next_release in releases:
         release_time = parse_date(next_release['published_at'])
         if newest is None or release_time > newest:
            newest = release_time
            release = next_release
      if release is None:
         return None
   else:
      release = json.loads(response.text)
      assert release is not None
   for asset in release['assets']:
      if not asset_filter(asset):
         continue
      asset_date = parse_date(asset['updated_at'])
      destination = destination_folder / asset['name']
      if last_date is None or asset_date > last_date or not destination.exists():
         print(f'Downloading update: {release["tag_name"]}')
         response = requests.get(asset['browser_download_url'], timeout=10)
         if response.status_code != 200:
            print(f'Error {response.status_code}!')
            print(response.text)
            if not destination.exists():
               response.raise_for_status()
            return None
         destination_folder.mkdir(parents=True, exist_ok=True)
         with open(destination, 'wb') as file:
            file.write(response.content)
         return (asset_date, destination)
      return None
   return None
