import argparse
import asyncio
import json
import sys
from typing import Any, Dict, List

import aiohttp

from core.config import ConfigError, load_config
from core.runner import collect_repair_targets
from core.scheduler import is_valid_cron
from repairer import build_client, run_once, run_scheduler, setup_logging


def _load():
    try:
        return load_config()
    except ConfigError as e:
        print(json.dumps({"error": str(e)}, indent=2))
        sys.exit(1)


def cmd_instances(args):
    cfg = _load()
    out: List[Dict[str, Any]] = []
    for inst in cfg.instances:
        out.append({
            "name": inst.name,
            "base_url": inst.base_url,
            "enabled": inst.enabled,
            "cron_schedule": inst.cron_schedule,
            "cron_valid": is_valid_cron(inst.cron_schedule, cfg.timezone),
            "concurrency_limit": inst.concurrency_limit,
            "retry_attempts": inst.retry_attempts,
            "retry_delay": inst.retry_delay,
        })
    print(json.dumps({"source": cfg.source, "timezone": cfg.timezone, "instances": out}, indent=2))


async def _scan(cfg, instance):
    async with aiohttp.ClientSession() as session:
        client = build_client(session, cfg)
        torrents = await client.get_torrent_list(instance.base_url)
        detailed = await client.get_detailed_torrents_concurrently(
            torrents, instance.base_url, instance.concurrency_limit
        )
    return torrents, detailed


def cmd_scan(args):
    cfg = _load()
    instance = cfg.find_instance(args.instance)
    if instance is None:
        print(json.dumps({"error": f"Instance '{args.instance}' not found"}, indent=2))
        sys.exit(1)
    torrents, detailed = asyncio.run(_scan(cfg, instance))
    targets = collect_repair_targets(detailed)
    print(
        json.dumps(
            {
                "instance": instance.name,
                "torrents": len(torrents),
                "unreadable_torrents": [d.hash for d in detailed if d.unreadable],
                "broken_files": [
                    {
                        "torrent": t.torrent.name,
                        "hash": t.torrent.hash,
                        "file_id": t.file.id,
                        "file": t.file.name,
                        "status": t.file.status,
                    }
                    for t in targets
                ],
            },
            indent=2,
        )
    )


def cmd_run(args):
    cfg = _load()
    setup_logging(cfg.logging_level)
    sys.exit(asyncio.run(run_once(cfg, args.instance)))


def cmd_schedule(args):
    cfg = _load()
    setup_logging(cfg.logging_level)
    sys.exit(asyncio.run(run_scheduler(cfg)))


def main():
    ap = argparse.ArgumentParser(description="Zurg File Repair CLI")
    sub = ap.add_subparsers(dest='cmd')

    p_inst = sub.add_parser('instances', help='Show configured instances')
    p_inst.set_defaults(func=cmd_instances)

    p_scan = sub.add_parser('scan', help='List broken files without repairing them')
    p_scan.add_argument('--instance', required=True, help='Instance name')
    p_scan.set_defaults(func=cmd_scan)

    p_run = sub.add_parser('run', help='Repair once (all enabled instances or one)')
    p_run.add_argument('--instance', help='Only run this instance')
    p_run.set_defaults(func=cmd_run)

    p_sched = sub.add_parser('schedule', help='Run on each instance cron schedule until stopped')
    p_sched.set_defaults(func=cmd_schedule)

    args = ap.parse_args()
    if not hasattr(args, 'func'):
        ap.print_help()
        sys.exit(1)
    args.func(args)


if __name__ == '__main__':
    main()
