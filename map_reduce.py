#!/usr/bin/env python3
import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from mr_config import Config, configure_logging
from master import Master, JobFailedError
from jobs import player_batting

LOG = logging.getLogger("map_reduce")

CAREER_BATTING_JOB = Path(player_batting.__file__).resolve()

usage_msg = """
map_reduce.py – Run MapReduce jobs on a local worker pool.

Commands:
  career_batting <Batting.csv> <output>   Sum every player's season batting lines into career totals.
  map_reduce <job_file> <inputs>          Run any job file to completion.
         --output DIR                     Output directory (must not exist).
         [--map MAP_FN]                   Optional map function name (default: 'map_function').
         [--reduce REDUCE_FN]             Optional reduce function name (default: 'reduce_function').
         [--iterator ITERATOR_FN]         Optional iterator function name (default: None).

Common options:
  [--reducers N]                          Number of reduce partitions (default: MR_NUM_REDUCERS or 4).
  [--workers N]                           Number of worker threads (default: MR_NUM_WORKERS or 4).
  [--log-level LEVEL]                     Logging level (default: MR_LOG_LEVEL or INFO).

Examples:
  python3 map_reduce.py career_batting data/Batting.csv out/PlayerBatting
  python3 map_reduce.py map_reduce jobs/player_batting.py data/Batting.csv \\
        --output out/PlayerBatting --iterator iterator_fn --reducers 2
"""


def check_files(paths: List[str], kind: str) -> bool:
    missing = [p for p in paths if not Path(p).is_file()]
    for p in missing:
        print(f"{kind} not found: {p}", file=sys.stderr)
    return not missing


def upload_job_script(filesystem, local_job_path: str) -> str:
    """Copy a local job script to /jobs/ on HDFS so workers can load it."""
    hdfs_path = f"/jobs/{Path(local_job_path).name}"
    with open(local_job_path, "rb") as f:
        script_bytes = f.read()
    filesystem.create_dir("/jobs", recursive=True)
    with filesystem.open_output_stream(hdfs_path) as out:
        out.write(script_bytes)
    LOG.info("Uploaded job script to HDFS: %s", hdfs_path)
    return hdfs_path


def map_reduce(
    config: Config, job_file: str, inputs: List[str], output: str,
    map_fn: str = "map_function", reduce_fn: str = "reduce_function",
    iterator_fn: Optional[str] = None, job_name: Optional[str] = None) -> List[str]:
    """Run a job to completion and return the paths of its output files."""
    master = Master(config)
    if config.filesystem == "hdfs":
        job_file = upload_job_script(master.fs, job_file)
    file_paths = master.map_reduce(
        job_path=job_file,
        input_paths=inputs,
        output_dir=output,
        map_fn=map_fn,
        reduce_fn=reduce_fn,
        iterator_fn=iterator_fn,
        job_name=job_name,
    )
    print("MapReduce job completed successfully.")
    print("Output files:")
    for path in file_paths:
        print(f"  {path}")
    return file_paths


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="map_reduce",
        description="Run MapReduce jobs on a local worker pool.",
        usage=usage_msg,
        add_help=True
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--reducers", type=int, help="Number of reduce partitions")
    common.add_argument("--workers", type=int, help="Number of worker threads")
    common.add_argument("--log-level", help="Logging level (DEBUG, INFO, WARNING, ...)")

    subparsers = parser.add_subparsers(dest="command")

    # Career batting
    p_batting = subparsers.add_parser("career_batting", parents=[common],
                                      help="Career batting totals for every player in Batting.csv.")
    p_batting.add_argument("input", help="Path to Batting.csv")
    p_batting.add_argument("output", help="Output directory for PlayerBatting part files")

    # MapReduce
    p_map_reduce = subparsers.add_parser("map_reduce", parents=[common],
                                         help="Run a MapReduce job to completion.")
    p_map_reduce.add_argument("job_file", help="Path to the job file (.py)")
    p_map_reduce.add_argument("inputs", nargs="+", help="Input file paths")
    p_map_reduce.add_argument("--output", required=True, help="Output directory")
    p_map_reduce.add_argument("--map", dest="map_fn", default="map_function", help="Map function name")
    p_map_reduce.add_argument("--reduce", dest="reduce_fn", default="reduce_function", help="Reduce function name")
    p_map_reduce.add_argument("--iterator", dest="iterator_fn", default=None, help="Iterator function name")

    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    if not args.command:
        print(usage_msg, file=sys.stderr)
        return 1

    try:
        config = Config.from_env().override(
            num_reducers=args.reducers,
            num_workers=args.workers,
            log_level=args.log_level,
        )
    except ValidationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 1
    configure_logging(config.log_level)

    if args.command == "career_batting":
        job_file, inputs, output = str(CAREER_BATTING_JOB), [args.input], args.output
        map_fn, reduce_fn, iterator_fn = "map_function", "reduce_function", "iterator_fn"
        job_name = player_batting.JOB_NAME
    else:
        job_file, inputs, output = args.job_file, args.inputs, args.output
        map_fn, reduce_fn, iterator_fn = args.map_fn, args.reduce_fn, args.iterator_fn
        job_name = Path(job_file).stem

    if not check_files([job_file], "Job file"):
        return 1
    # HDFS inputs are checked by the workers
    if config.filesystem == "local" and not check_files(inputs, "Input file"):
        return 1

    try:
        map_reduce(config, job_file, inputs, output, map_fn, reduce_fn, iterator_fn, job_name)
    except JobFailedError as e:
        print(f"MapReduce job failed: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
