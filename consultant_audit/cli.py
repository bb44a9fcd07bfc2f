"""
Command-line entry point.

    consultant-audit run [--slug S ...] [--limit N] [--random] [--concurrency N] [--skip-assess] [--enqueue]
    consultant-audit run --resume [RUN_ID] [--enqueue]
    consultant-audit status RUN_ID
    consultant-audit cancel RUN_ID
    consultant-audit worker
    consultant-audit config show | reset [--by NAME]
    consultant-audit review mark | reset-profile | reset-run --run-id ID [--slug S] [--by NAME]
"""
import argparse
import json
import sys

import yaml

from consultant_audit.database import init_db
from consultant_audit.logging_config import configure_logging
from consultant_audit.pipeline.manager import launch_run, resume_run, cancel_run, get_run_status, start_worker
from consultant_audit.pipeline.scoring_config import ScoringConfigStore
from consultant_audit.services.review import REVIEW_ACTIONS, apply_review_action


def _cmd_run(args):
    try:
        if args.resume is not None:
            run = resume_run(args.resume or None, enqueue=args.enqueue)
        else:
            run = launch_run(
                slugs=args.slug,
                limit=args.limit,
                sample=args.random,
                concurrency=args.concurrency,
                skip_assess=args.skip_assess,
                enqueue=args.enqueue,
            )
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    if args.enqueue:
        print(f"Run {run['id']} queued ({run['total']} consultants).")
    else:
        print(run.get('summary') or f"Run {run['id']} {run['status']}.")
    return 0 if run['status'] != 'failed' else 1


def _cmd_status(args):
    run = get_run_status(args.run_id)
    if run is None:
        print(f"Run {args.run_id} not found.", file=sys.stderr)
        return 1
    run.pop('slugs', None)
    print(json.dumps(run, indent=2))
    return 0


def _cmd_cancel(args):
    if cancel_run(args.run_id):
        print(f"Cancellation requested for run {args.run_id}.")
        return 0
    print(f"Run {args.run_id} not found or already finished.", file=sys.stderr)
    return 1


def _cmd_worker(args):
    start_worker()
    return 0


def _cmd_config(args):
    store = ScoringConfigStore()
    if args.action == 'reset':
        config = store.reset(args.by)
        print(f"Scoring config reset to defaults (version {config.version}).")
        return 0
    print(yaml.safe_dump(store.read().to_dict(), sort_keys=False), end='')
    return 0


def _cmd_review(args):
    try:
        count = apply_review_action(args.action, args.run_id, args.slug, args.by)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    print(f"{count} record(s) updated.")
    return 0


def build_parser():
    parser = argparse.ArgumentParser(prog='consultant-audit', description='Consultant profile quality audit')
    sub = parser.add_subparsers(dest='command', required=True)

    run = sub.add_parser('run', help='Audit consultants (all sitemap consultants unless --slug is given)')
    run.add_argument('--slug', action='append', help='Consultant slug; repeat for several')
    run.add_argument('--limit', type=int, help='Process at most N consultants')
    run.add_argument('--random', action='store_true', help='With --limit, pick a random sample')
    run.add_argument('--concurrency', type=int, help='Consultants processed in parallel')
    run.add_argument('--skip-assess', action='store_true', help='Skip the AI content assessment')
    run.add_argument('--enqueue', action='store_true', help='Queue the run on RQ instead of running it here')
    run.add_argument('--resume', nargs='?', const='', metavar='RUN_ID',
                     help='Resume a run (the latest incomplete one if no id is given), skipping scored consultants')
    run.set_defaults(func=_cmd_run)

    status = sub.add_parser('status', help='Show a run')
    status.add_argument('run_id')
    status.set_defaults(func=_cmd_status)

    cancel = sub.add_parser('cancel', help='Stop dispatching new consultants for a run')
    cancel.add_argument('run_id')
    cancel.set_defaults(func=_cmd_cancel)

    worker = sub.add_parser('worker', help='Process queued runs (RQ worker)')
    worker.set_defaults(func=_cmd_worker)

    config = sub.add_parser('config', help='Show or reset the scoring configuration')
    config.add_argument('action', choices=['show', 'reset'])
    config.add_argument('--by', default='cli', help='Name recorded as updated_by')
    config.set_defaults(func=_cmd_config)

    review = sub.add_parser('review', help='Review marks on consultant records')
    review.add_argument('action', choices=list(REVIEW_ACTIONS))
    review.add_argument('--run-id', required=True)
    review.add_argument('--slug')
    review.add_argument('--by', default='reviewer', help='Reviewer name (mark only)')
    review.set_defaults(func=_cmd_review)

    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    configure_logging()
    init_db()
    return args.func(args)


if __name__ == '__main__':
    sys.exit(main())
