#!/usr/bin/env python3
"""
apnode CLI

Command-line interface for a local node:
  apnode serve - Run the HTTP node
  apnode create-actor - Register an actor
  apnode send - Send an encrypted note
  apnode inbox / outbox - List a mailbox
  apnode decrypt - Decrypt an actor's inbox
  apnode follow - Record a follow
  apnode followers - Show an actor's followers

Usage:
  apnode [--config <file>] [--data-dir <dir>] create-actor <username>
  apnode send <sender> <recipient> <content>
  apnode decrypt <username>
  apnode serve [--host <host>] [--port <port>]
"""

import argparse
import json
import logging
import sys

from .config import NodeConfig
from .errors import NodeError
from .node import Node


def _node(args) -> Node:
    config = NodeConfig.load(
        args.config,
        data_dir=args.data_dir,
        base_url=args.base_url,
        network_delivery=False if args.offline else None,
    )
    return Node(config)


def _print_json(data):
    print(json.dumps(data, indent=2))


def cmd_serve(args):
    """Run the HTTP node."""
    from .server import NodeServer

    server = NodeServer(_node(args), host=args.host, port=args.port)
    server.start()


def cmd_create_actor(args):
    """Register an actor."""
    profile = _node(args).create_actor(args.username)
    print(f"Created {profile['id']}")
    if args.verbose:
        _print_json(profile)


def cmd_send(args):
    """Send an encrypted note."""
    result = _node(args).send(args.sender, args.recipient, args.content)
    _print_json(result.to_dict())
    if not result.ok:
        print(f"Stored locally, remote delivery {result.status.value}", file=sys.stderr)
        return 2
    return 0


def cmd_inbox(args):
    _print_json(_node(args).list_inbox(args.username))


def cmd_outbox(args):
    _print_json(_node(args).list_outbox(args.username))


def cmd_decrypt(args):
    """Decrypt an actor's inbox."""
    for item in _node(args).decrypt_inbox(args.username):
        if "error" in item:
            print(f"{item['entryId']}  ! {item['error']}")
        else:
            print(f"{item['entryId']}  {item['decrypted']}")


def cmd_follow(args):
    _node(args).follow(args.actor, args.target)
    print(f"{args.actor} now follows {args.target}")


def cmd_followers(args):
    _print_json(_node(args).followers_collection(args.username))


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="apnode",
        description="Federated messaging node",
    )
    parser.add_argument("--config", help="YAML config file")
    parser.add_argument("--data-dir", help="Data directory")
    parser.add_argument("--base-url", help="Public origin of this node")
    parser.add_argument("--offline", action="store_true", help="Skip the remote delivery hop")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP node")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=3000, help="Port to bind to")
    serve_parser.set_defaults(func=cmd_serve)

    create_parser = subparsers.add_parser("create-actor", help="Register an actor")
    create_parser.add_argument("username")
    create_parser.set_defaults(func=cmd_create_actor)

    send_parser = subparsers.add_parser("send", help="Send an encrypted note")
    send_parser.add_argument("sender")
    send_parser.add_argument("recipient")
    send_parser.add_argument("content")
    send_parser.set_defaults(func=cmd_send)

    for name, func in (("inbox", cmd_inbox), ("outbox", cmd_outbox), ("decrypt", cmd_decrypt),
                       ("followers", cmd_followers)):
        sub = subparsers.add_parser(name, help=f"Show {name} for an actor")
        sub.add_argument("username")
        sub.set_defaults(func=func)

    follow_parser = subparsers.add_parser("follow", help="Record a follow")
    follow_parser.add_argument("actor", help="Follower actor URI")
    follow_parser.add_argument("target", help="Followed actor URI")
    follow_parser.set_defaults(func=cmd_follow)

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    try:
        return args.func(args) or 0
    except NodeError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
