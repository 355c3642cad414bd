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

"""CodeDove - Relay a Claude Code session running in tmux to a remote chat: waiting prompts out, messages in, replies streamed back."""

from .__version__ import __version__, __author__, __license__

# Configuration
from .config import CodedoveConfig, get_config, reload_config, set_config

# Transcript location
from .sessions import LiveFile, SessionInfo, find_live_file, list_sessions, resolve_live_file

# Events handed to the chat layer
from .events import DetectedImage, ResponseEvent, WaitingState, WaitingType

# Waiting-state detection
from .monitor import WaitingStateMonitor, classify_waiting_type, parse_multiple_choices

# Response streaming
from .watcher import ResponseWatcher, watch_for_response
from .watcher_manager import WatchBaseline, WatcherManager

# Injection
from .bridge import InjectionBridge
from .state import AttachedSession, AttachmentStore
from .tmux import PaneResult, TmuxPanes

# Permission relay
from .permissions import PermissionRequest, respond_to_permission, watch_permission_requests

__all__ = [
    '__version__', '__author__', '__license__',
    'CodedoveConfig', 'get_config', 'reload_config', 'set_config',
    'LiveFile', 'SessionInfo', 'find_live_file', 'list_sessions', 'resolve_live_file',
    'DetectedImage', 'ResponseEvent', 'WaitingState', 'WaitingType',
    'WaitingStateMonitor', 'classify_waiting_type', 'parse_multiple_choices',
    'ResponseWatcher', 'watch_for_response', 'WatchBaseline', 'WatcherManager',
    'InjectionBridge', 'AttachedSession', 'AttachmentStore', 'PaneResult', 'TmuxPanes',
    'PermissionRequest', 'respond_to_permission', 'watch_permission_requests',
]
