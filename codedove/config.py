#!/usr/bin/env python3

# CodeDove - Remote chat bridge for terminal coding assistants
# Copyright (C) 2025 Robert Macrae
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.

"""
config.py - Centralized configuration management for codedove
Single source of truth for paths and timing values
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from .logs import log_message

# Load .env first (takes precedence)
load_dotenv()
# Also load .codedove.env (won't override existing vars from .env)
load_dotenv('.codedove.env')

# Keys that live in the user-editable config.json
FILE_KEYS = ('repos_folder', 'allowed_chat_id')


def _default_projects_path() -> str:
    return os.path.expanduser('~/.claude/projects')


def _default_state_dir() -> str:
    return os.path.expanduser('~/.codedove')


def _default_repos_folder() -> str:
    return os.path.expanduser('~/repositories')


@dataclass
class CodedoveConfig:
    """Centralized configuration for all codedove components"""

    # Core settings
    log_file: Optional[str] = None
    verbosity: int = 0

    # Locations
    projects_path: str = field(default_factory=_default_projects_path)
    state_dir: str = field(default_factory=_default_state_dir)
    repos_folder: str = field(default_factory=_default_repos_folder)

    # Chat access
    allowed_chat_id: Optional[int] = None

    # Timing (seconds)
    monitor_debounce: float = 3.0
    ping_after: float = 60.0
    completion_grace: float = 0.5
    rotation_poll_interval: float = 3.0
    rotation_poll_timeout: float = 60.0
    interrupt_settle: float = 0.6

    @property
    def attached_session_path(self) -> str:
        return os.path.join(self.state_dir, 'attached')

    @property
    def config_path(self) -> str:
        return os.path.join(self.state_dir, 'config.json')

    @classmethod
    def from_env(cls) -> 'CodedoveConfig':
        """Create configuration from environment variables"""
        config = cls()

        config.log_file = os.environ.get('CODEDOVE_LOG_FILE')
        config.verbosity = int(os.environ.get('CODEDOVE_VERBOSITY', '0'))

        projects_path = os.environ.get('CODEDOVE_PROJECTS_PATH')
        if projects_path:
            config.projects_path = os.path.expanduser(projects_path)

        state_dir = os.environ.get('CODEDOVE_STATE_DIR')
        if state_dir:
            config.state_dir = os.path.expanduser(state_dir)

        repos_folder = os.environ.get('CODEDOVE_REPOS_FOLDER')
        if repos_folder:
            config.repos_folder = os.path.expanduser(repos_folder)

        chat_id = os.environ.get('CODEDOVE_ALLOWED_CHAT_ID')
        if chat_id:
            config.allowed_chat_id = int(chat_id)

        config.monitor_debounce = float(os.environ.get('CODEDOVE_MONITOR_DEBOUNCE', '3.0'))
        config.ping_after = float(os.environ.get('CODEDOVE_PING_AFTER', '60'))
        config.completion_grace = float(os.environ.get('CODEDOVE_COMPLETION_GRACE', '0.5'))
        config.rotation_poll_interval = float(os.environ.get('CODEDOVE_ROTATION_POLL_INTERVAL', '3'))
        config.rotation_poll_timeout = float(os.environ.get('CODEDOVE_ROTATION_POLL_TIMEOUT', '60'))
        config.interrupt_settle = float(os.environ.get('CODEDOVE_INTERRUPT_SETTLE', '0.6'))

        return config

    def merge_with_args(self, args: Any) -> None:
        """Merge command-line arguments with configuration"""
        if hasattr(args, 'log_file') and args.log_file:
            self.log_file = args.log_file

        if hasattr(args, 'verbose'):
            # Count verbose flags (-v = 1, -vv = 2, etc.)
            self.verbosity = args.verbose or 0

        if hasattr(args, 'projects_path') and args.projects_path:
            self.projects_path = os.path.expanduser(args.projects_path)

        if hasattr(args, 'state_dir') and args.state_dir:
            self.state_dir = os.path.expanduser(args.state_dir)

        if hasattr(args, 'debounce') and args.debounce is not None:
            self.monitor_debounce = args.debounce

    def load_file(self, path: Optional[str] = None) -> None:
        """Overlay values from config.json; a missing or malformed file leaves defaults"""
        path = path or self.config_path
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except FileNotFoundError:
            return
        except (OSError, ValueError) as e:
            log_message("WARNING", f"Ignoring unreadable config {path}: {e}")
            return

        if not isinstance(data, dict):
            log_message("WARNING", f"Ignoring config {path}: expected an object")
            return
        converters = {
            'repos_folder': os.path.expanduser,
            'allowed_chat_id': int,
        }
        for key, convert in converters.items():
            value = data.get(key)
            if value is None or value == '':
                continue
            try:
                setattr(self, key, convert(value))
            except (TypeError, ValueError) as e:
                log_message("WARNING", f"Ignoring bad {key} in {path}: {e}")

    def save_file(self, path: Optional[str] = None, **updates: Any) -> None:
        """Merge updates into config.json, keeping keys already on disk"""
        path = path or self.config_path
        for key, value in updates.items():
            if key in FILE_KEYS:
                setattr(self, key, value)

        existing: Dict[str, Any] = {}
        try:
            with open(path, 'r', encoding='utf-8') as f:
                loaded = json.load(f)
            if isinstance(loaded, dict):
                existing = loaded
        except (OSError, ValueError):
            pass

        existing.update({key: getattr(self, key) for key in FILE_KEYS})
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(existing, f, indent=2)
            f.write('\n')

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary"""
        data = {
            k: v for k, v in self.__dict__.items()
            if not k.startswith('_')
        }
        data['attached_session_path'] = self.attached_session_path
        data['config_path'] = self.config_path
        return data


# Global configuration instance
_config: Optional[CodedoveConfig] = None


def get_config() -> CodedoveConfig:
    """Get the global configuration instance"""
    global _config
    if _config is None:
        _config = CodedoveConfig.from_env()
        _config.load_file()
    return _config


def reload_config() -> CodedoveConfig:
    """Reload configuration from environment and config.json"""
    global _config
    _config = CodedoveConfig.from_env()
    _config.load_file()
    return _config


def set_config(config: CodedoveConfig) -> None:
    """Set the global configuration instance"""
    global _config
    _config = config
