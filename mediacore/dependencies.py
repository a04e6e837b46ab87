"""Locates the external engines (ffmpeg, ffprobe, yt-dlp) and reports their versions."""
import sys
import shutil
import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .config import Settings
from .constants import APP_PATH, SUBPROCESS_CREATION_FLAGS

logger = logging.getLogger(__name__)


def find_executable(name: str, override: Optional[Path] = None) -> Optional[Path]:
    """
    Finds an executable, preferring an explicit override, then a locally managed copy.

    Args:
        name: Bare executable name, e.g. 'ffmpeg'.
        override: A configured path that wins when it exists.

    Returns:
        The resolved path, or None when the executable is nowhere to be found.
    """
    if override is not None:
        if override.exists():
            return override
        logger.warning(f"Configured path for {name} does not exist: {override}")

    local_path = APP_PATH / (f'{name}.exe' if sys.platform == 'win32' else name)
    if local_path.exists():
        return local_path
    path_in_system = shutil.which(name)
    return Path(path_in_system) if path_in_system else None


@dataclass(frozen=True)
class ToolPaths:
    """Resolved engine locations. A missing engine falls back to its bare name."""
    ffmpeg: str = 'ffmpeg'
    ffprobe: str = 'ffprobe'
    yt_dlp: str = 'yt-dlp'

    @classmethod
    def discover(cls, settings: Settings) -> 'ToolPaths':
        """Resolves every engine from the settings overrides, the app dir, and PATH."""
        resolved = {}
        for attr, name, override in (
            ('ffmpeg', 'ffmpeg', settings.ffmpeg_path),
            ('ffprobe', 'ffprobe', settings.ffprobe_path),
            ('yt_dlp', 'yt-dlp', settings.yt_dlp_path),
        ):
            path = find_executable(name, override)
            if path is None:
                logger.warning(f"{name} not found; jobs that need it will fail.")
                resolved[attr] = name
            else:
                resolved[attr] = str(path)
        tools = cls(**resolved)
        logger.info(f"Engines: ffmpeg={tools.ffmpeg} ffprobe={tools.ffprobe} yt-dlp={tools.yt_dlp}")
        return tools


async def get_version(executable_path: Optional[Path]) -> str:
    """Asynchronously returns the version of an executable by running it with '--version'."""
    if not executable_path or not executable_path.exists():
        return "Not found"
    try:
        command: List[str] = [str(executable_path)]
        if 'ff' in executable_path.name.lower():
            command.append('-version')
        else:
            command.append('--version')

        kwargs = {'stdout': asyncio.subprocess.PIPE, 'stderr': asyncio.subprocess.PIPE}
        if sys.platform == 'win32':
            kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS

        process = await asyncio.create_subprocess_exec(*command, **kwargs)
        stdout_bytes, _ = await asyncio.wait_for(process.communicate(), timeout=15)

        if process.returncode != 0:
            return "Cannot execute"

        return stdout_bytes.decode('utf-8', 'replace').strip().split('\n')[0]
    except FileNotFoundError:
        return "Not found or no permission"
    except asyncio.TimeoutError:
        return "Version check timed out"
    except OSError:
        return "Cannot execute"
