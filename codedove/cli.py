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

"""CodeDove CLI - try the bridge from a local terminal"""

import argparse
import asyncio
import json
import signal
import sys
from typing import List, Optional

from . import __version__
from .config import get_config
from .events import DetectedImage, ResponseEvent, WaitingState
from .logs import LogEntry, add_log_listener, log_message, setup_logging
from .monitor import WaitingStateMonitor
from .permissions import PermissionRequest, watch_permission_requests
from .sessions import find_session_file, list_sessions
from .state import AttachmentStore
from .transcript import extract_cwd, read_entries, session_id_from_path
from .bridge import InjectionBridge
from .watcher_manager import WatcherManager

# Check Python version
if sys.version_info < (3, 10):
    print("Error: Python 3.10 or higher required", file=sys.stderr)
    print("Your version:", sys.version, file=sys.stderr)
    sys.exit(1)


def parse_arguments(argv: Optional[List[str]] = None):
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description='CodeDove - Relay a Claude Code session in tmux to a remote chat',
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument('-v', '--verbose', action='count', default=0,
                        help='Increase verbosity (print log lines to stderr)')
    parser.add_argument('--log-file', type=str, metavar='FILE',
                        help='Write the log to FILE')
    parser.add_argument('--projects-path', type=str, metavar='DIR',
                        help='Transcript root (default: ~/.claude/projects)')
    parser.add_argument('--state-dir', type=str, metavar='DIR',
                        help='Where the attachment record is kept (default: ~/.codedove)')

    subparsers = parser.add_subparsers(dest='command')

    monitor_parser = subparsers.add_parser('monitor', help='Print waiting prompts from every session')
    monitor_parser.add_argument('--debounce', type=float, metavar='SECONDS',
                                help='Quiet period before a transcript is classified')
    monitor_parser.add_argument('--permissions', action='store_true',
                                help='Also print permission requests from the hook')

    sessions_parser = subparsers.add_parser('sessions', help='List recent sessions')
    sessions_parser.add_argument('-n', '--limit', type=int, default=20)

    attach_parser = subparsers.add_parser('attach', help='Attach to a session')
    attach_parser.add_argument('session_id', help='Session id (a unique prefix is enough)')

    subparsers.add_parser('detach', help='Forget the attached session')

    send_parser = subparsers.add_parser('send', help='Type a message into the attached session and print the reply')
    send_parser.add_argument('text', nargs='+')
    send_parser.add_argument('--no-interrupt', action='store_true',
                             help='Do not interrupt a turn that is still running')

    timer_parser = subparsers.add_parser('timer', help='Send a fixed prompt to the attached session on a schedule')
    timer_parser.add_argument('prompt', nargs='+')
    timer_parser.add_argument('--every', type=float, required=True, metavar='MINUTES',
                              help='Minutes between prompts')

    subparsers.add_parser('status', help='Show the attached session and settings')

    return parser, parser.parse_args(argv)


def _print_log_entry(entry: LogEntry) -> None:
    print(f"[{entry.time}] {entry.message}", file=sys.stderr)


def _resolve_session_prefix(prefix: str, projects_path: str) -> Optional[str]:
    path = find_session_file(prefix, projects_path)
    if path:
        return path
    matches = [s.file_path for s in list_sessions(limit=1000, projects_path=projects_path)
               if s.session_id.startswith(prefix)]
    return matches[0] if len(matches) == 1 else None


def cmd_sessions(args) -> int:
    config = get_config()
    sessions = list_sessions(limit=args.limit, projects_path=config.projects_path)
    if not sessions:
        print(f"No sessions under {config.projects_path}")
        return 0
    for session in sessions:
        marker = '?' if session.waiting_prompt else ' '
        print(f"{session.session_id[:8]} {marker} {session.mtime:%Y-%m-%d %H:%M}  "
              f"{session.project_name:<20}  {session.last_message[:60]}")
    return 0


def cmd_attach(args) -> int:
    config = get_config()
    path = _resolve_session_prefix(args.session_id, config.projects_path)
    if not path:
        print(f"Error: no single session matches {args.session_id}", file=sys.stderr)
        return 1
    entries = read_entries(path) or []
    session_id = session_id_from_path(path)
    cwd = extract_cwd(entries)
    if not cwd:
        print(f"Error: session {session_id[:8]} has no working directory yet", file=sys.stderr)
        return 1
    if not AttachmentStore(config.attached_session_path).save(session_id, cwd):
        return 1
    print(f"Attached to {session_id[:8]} ({cwd})")
    return 0


def cmd_detach(args) -> int:
    AttachmentStore(get_config().attached_session_path).clear()
    print("Detached")
    return 0


def cmd_status(args) -> int:
    config = get_config()
    attached = AttachmentStore(config.attached_session_path).load()
    if attached:
        print(f"Attached: {attached.session_id} ({attached.cwd})")
    else:
        print("Attached: none")
    print(json.dumps(config.to_dict(), indent=2, default=str))
    return 0


async def cmd_monitor(args) -> int:
    stop_event = asyncio.Event()

    def on_waiting(state: WaitingState) -> None:
        print(f"\n[{state.project_name} {state.session_id[:8]}] waiting ({state.kind.value})")
        print(state.prompt)
        for index, choice in enumerate(state.choices or [], 1):
            print(f"  {index}. {choice}")

    def on_permission(request: PermissionRequest) -> None:
        print(f"\n[permission {request.request_id[:8]}] {request.tool_name}: {request.tool_input}")

    monitor = WaitingStateMonitor(on_waiting, debounce=args.debounce)
    if not monitor.start():
        print(f"Error: cannot watch {monitor.projects_path}", file=sys.stderr)
        return 1
    stop_permissions = watch_permission_requests(on_permission) if args.permissions else None

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop_event.set)

    print(f"Monitoring {monitor.projects_path} (Ctrl-C to stop)")
    try:
        await stop_event.wait()
    finally:
        monitor.stop()
        if stop_permissions:
            stop_permissions()
    return 0


async def cmd_send(args) -> int:
    config = get_config()
    attachments = AttachmentStore(config.attached_session_path)
    done = asyncio.Event()

    def on_response(event: ResponseEvent) -> None:
        print(event.text)
        print()

    def on_ping() -> None:
        print("... still working", file=sys.stderr)

    def on_images(images: List[DetectedImage]) -> None:
        for image in images:
            print(f"[image] {image.path} ({image.media_type})")

    manager = WatcherManager(attachments, on_ping=on_ping, on_images=on_images)
    bridge = InjectionBridge(manager, attachments)
    result = await bridge.send_text(' '.join(args.text), on_response=on_response,
                                    on_complete=done.set, interrupt=not args.no_interrupt)
    if not result.found:
        print(f"Error: could not send ({result.reason})", file=sys.stderr)
        return 1
    try:
        await done.wait()
    finally:
        manager.clear()
    return 0


async def cmd_timer(args) -> int:
    if args.every <= 0:
        print("Error: --every must be positive", file=sys.stderr)
        return 1
    config = get_config()
    attachments = AttachmentStore(config.attached_session_path)
    stop_event = asyncio.Event()

    def on_response(event: ResponseEvent) -> None:
        print(event.text)
        print()

    manager = WatcherManager(attachments, on_response=on_response)
    bridge = InjectionBridge(manager, attachments)

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop_event.set)

    prompt = ' '.join(args.prompt)
    bridge.start_timer(args.every * 60, prompt)
    print(f"Sending every {args.every:g} min: {prompt} (Ctrl-C to stop)")
    try:
        await stop_event.wait()
    finally:
        bridge.stop_timer()
        manager.clear()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI"""
    parser, args = parse_arguments(argv)

    # Set up logging early if log file specified (before any other operations)
    config = get_config()
    config.merge_with_args(args)
    if config.log_file:
        setup_logging(config.log_file, mode='a')
    if config.verbosity:
        add_log_listener(_print_log_entry)

    if args.command is None:
        parser.print_help()
        return 0

    log_message("DEBUG", f"codedove {__version__} running {args.command}")
    try:
        if args.command == 'sessions':
            return cmd_sessions(args)
        if args.command == 'attach':
            return cmd_attach(args)
        if args.command == 'detach':
            return cmd_detach(args)
        if args.command == 'status':
            return cmd_status(args)
        if args.command == 'monitor':
            return asyncio.run(cmd_monitor(args))
        if args.command == 'send':
            return asyncio.run(cmd_send(args))
        if args.command == 'timer':
            return asyncio.run(cmd_timer(args))
    except KeyboardInterrupt:
        return 130  # Standard exit code for Ctrl+C
    parser.print_help()
    return 1


if __name__ == '__main__':
    sys.exit(main())
