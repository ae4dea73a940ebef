"""End-to-end tests: run jobs through the master and workers on the local filesystem."""

import os
import tempfile
import textwrap
import unittest
from collections import defaultdict
from contextlib import redirect_stderr, redirect_stdout
from io import StringIO

import pyarrow.fs

import map_reduce
from master import Master, JobFailedError
from mr_config import Config
from worker import Worker, ReduceTaskRequest, load_user_function, partition_for

JOB_SCRIPT = str(map_reduce.CAREER_BATTING_JOB)

HEADER = "playerID,yearID,stint,teamID,lgID,G,G_batting,AB,R,H,2B,3B,HR,RBI,SB,CS,BB,SO,IBB,HBP,SH,SF,GIDP,G_old"
BATTING_1954 = [
    "aaronha01,1954,1,ML1,NL,122,122,468,58,131,27,6,13,69,2,2,28,39,,3,6,4,13,122",
    "aaronto01,1962,1,ML1,NL,141,141,334,54,77,20,2,8,38,6,2,41,58,0,0,0,3,6,141",
    "abadan01,2001,1,OAK,AL,1,1,1,0,0,0,0,0,0,0,0,0,0,0,0,0,0,0,1",
    "short01,2001,1,OAK,AL,1,1,1",
]
BATTING_1955 = [
    "aaronha01,1955,1,ML1,NL,153,153,602,105,189,37,9,27,106,3,1,49,61,5,3,7,4,20,153",
    "abadan01,2003,1,BOS,AL,9,9,17,1,2,0,0,0,0,0,1,3,5,0,0,0,0,1,",
]


def write_csv(directory, name, rows, header=HEADER):
    path = os.path.join(directory, name)
    with open(path, "w", encoding="utf-8") as f:
        f.write("\n".join([header] + rows) + "\n")
    return path


def read_output(file_paths):
    """Parse "<key>,<stats>" output lines into {key: stats}, checking keys are unique."""
    results = {}
    for path in file_paths:
        with open(path, "r", encoding="utf-8") as f:
            for line in f.read().splitlines():
                key, value = line.split(",", 1)
                assert key not in results, f"{key} emitted twice"
                results[key] = value
    return results


def run_job_locally(job_script, file_paths, iterator="iterator_fn"):
    """Run a MapReduce job in-process and sequentially using the job's own functions."""
    local_fs = pyarrow.fs.LocalFileSystem()
    iterator_fn = load_user_function(local_fs, job_script, iterator)
    map_function = load_user_function(local_fs, job_script, "map_function")
    reduce_function = load_user_function(local_fs, job_script, "reduce_function")

    grouped = defaultdict(list)
    for path in file_paths:
        with open(path, "rb") as f:
            data = f.read()
        for k1, v1 in iterator_fn(data, {"file_path": path}):
            for k2, v2 in map_function(k1, v1):
                grouped[k2].append(v2)

    results = {}
    for k2, v2 in grouped.items():
        for key, value in reduce_function(k2, v2):
            results[key] = value
    return results


class MapReduceTestCase(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = self._tmp.name
        self.output = os.path.join(self.tmp, "PlayerBatting")
        self.config = Config(num_reducers=3, num_workers=2, task_attempts=1)

    def tearDown(self):
        self._tmp.cleanup()


class TestCareerBattingJob(MapReduceTestCase):

    def run_batting(self, inputs, config=None):
        master = Master(config or self.config)
        return master.map_reduce(JOB_SCRIPT, inputs, self.output, iterator_fn="iterator_fn")

    def test_single_file(self):
        csv_path = write_csv(self.tmp, "Batting.csv", BATTING_1954)
        with self.assertLogs("player_batting", level="WARNING"):
            file_paths = self.run_batting([csv_path])

        self.assertEqual(len(file_paths), 3)
        results = read_output(file_paths)
        self.assertEqual(results, {
            "aaronha01": "122,468,58,131,27,6,13,69,2,2,28,39,0,3,6,4,13",
            "aaronto01": "141,334,54,77,20,2,8,38,6,2,41,58,0,0,0,3,6",
            "abadan01": "1,1,0,0,0,0,0,0,0,0,0,0,0,0,0,0,0",
        })

    def test_multiple_files_match_local_run(self):
        inputs = [
            write_csv(self.tmp, "Batting1954.csv", BATTING_1954),
            write_csv(self.tmp, "Batting1955.csv", BATTING_1955),
        ]
        file_paths = self.run_batting(inputs)

        results = read_output(file_paths)
        self.assertEqual(results, run_job_locally(JOB_SCRIPT, inputs))
        self.assertEqual(results["aaronha01"], "275,1070,163,320,64,15,40,175,5,3,77,100,5,6,13,8,33")
        self.assertEqual(results["abadan01"], "10,18,1,2,0,0,0,0,0,1,3,5,0,0,0,0,1")

    def test_keys_land_in_their_partition(self):
        csv_path = write_csv(self.tmp, "Batting.csv", BATTING_1954 + BATTING_1955)
        file_paths = self.run_batting([csv_path])
        for rid, path in enumerate(file_paths):
            with open(path, "r", encoding="utf-8") as f:
                for line in f.read().splitlines():
                    self.assertEqual(partition_for(line.split(",", 1)[0], 3), rid)

    def test_output_is_sorted_within_partition(self):
        csv_path = write_csv(self.tmp, "Batting.csv", BATTING_1954 + BATTING_1955)
        for path in self.run_batting([csv_path], Config(num_reducers=1, num_workers=1)):
            with open(path, "r", encoding="utf-8") as f:
                keys = [line.split(",", 1)[0] for line in f.read().splitlines()]
            self.assertEqual(keys, sorted(keys))
            self.assertEqual(keys, ["aaronha01", "aaronto01", "abadan01"])

    def test_header_only_input(self):
        csv_path = write_csv(self.tmp, "Batting.csv", [])
        file_paths = self.run_batting([csv_path])
        self.assertEqual(read_output(file_paths), {})

    def test_temporary_files_are_removed(self):
        csv_path = write_csv(self.tmp, "Batting.csv", BATTING_1955)
        self.run_batting([csv_path])
        self.assertEqual(sorted(os.listdir(self.output)), ["part-00000", "part-00001", "part-00002"])

    def test_non_numeric_stat_fails_the_job(self):
        csv_path = write_csv(self.tmp, "Batting.csv", BATTING_1955 + [
            "aaronha01,1956,1,ML1,NL,abc,153,609,106,200,34,14,26,92,2,4,37,54,6,2,5,7,21,153",
        ])
        with self.assertLogs("worker", level="ERROR"):
            with self.assertRaises(JobFailedError) as ctx:
                self.run_batting([csv_path])
        self.assertIn("aaronha01", str(ctx.exception))
        self.assertIn("abc", str(ctx.exception))

    def test_undecodable_line_does_not_fail_the_job(self):
        csv_path = os.path.join(self.tmp, "Batting.csv")
        with open(csv_path, "wb") as f:
            f.write("\n".join([HEADER] + BATTING_1955[:1]).encode("utf-8") + b"\n")
            f.write(b"bad\xff01,1954\n")
            f.write((BATTING_1954[0] + "\n").encode("utf-8"))
        with self.assertLogs("player_batting", level="WARNING") as logs:
            file_paths = self.run_batting([csv_path])
        self.assertIn("Line 3", "\n".join(logs.output))
        results = read_output(file_paths)
        self.assertEqual(results, {"aaronha01": "275,1070,163,320,64,15,40,175,5,3,77,100,5,6,13,8,33"})

    def test_failed_job_removes_temporary_files(self):
        csv_path = write_csv(self.tmp, "Batting.csv", BATTING_1955 + [
            "aaronha01,1956,1,ML1,NL,abc,153,609,106,200,34,14,26,92,2,4,37,54,6,2,5,7,21,153",
        ])
        with self.assertLogs("worker", level="ERROR"):
            with self.assertRaises(JobFailedError):
                self.run_batting([csv_path])
        self.assertFalse(os.path.exists(os.path.join(self.output, "_temporary")))

    def test_existing_output_is_refused(self):
        csv_path = write_csv(self.tmp, "Batting.csv", BATTING_1955)
        os.makedirs(self.output)
        with self.assertRaises(JobFailedError):
            self.run_batting([csv_path])


FLAKY_JOB = textwrap.dedent('''
    import os

    MARKER = {marker!r}

    def map_function(input_key, input_value):
        if not os.path.exists(MARKER):
            open(MARKER, "w").close()
            raise RuntimeError("first attempt fails")
        return [(word, "1") for word in input_value.split()]

    def reduce_function(key, values):
        yield key, sum(int(v) for v in values)
''')


class TestRetries(MapReduceTestCase):

    def setUp(self):
        super().setUp()
        self.job = os.path.join(self.tmp, "flaky.py")
        with open(self.job, "w", encoding="utf-8") as f:
            f.write(FLAKY_JOB.format(marker=os.path.join(self.tmp, "marker")))
        self.data = os.path.join(self.tmp, "words.txt")
        with open(self.data, "w", encoding="utf-8") as f:
            f.write("a b a\nc a\n")

    def test_failed_task_is_retried(self):
        master = Master(Config(num_reducers=2, num_workers=2, task_attempts=2))
        with self.assertLogs("master", level="WARNING"):
            file_paths = master.map_reduce(self.job, [self.data], self.output)
        self.assertEqual(read_output(file_paths), {"a": "3", "b": "1", "c": "1"})

    def test_job_fails_when_attempts_run_out(self):
        master = Master(Config(num_reducers=2, num_workers=2, task_attempts=1))
        with self.assertLogs("worker", level="ERROR"):
            with self.assertRaises(JobFailedError) as ctx:
                master.map_reduce(self.job, [self.data], self.output)
        self.assertIn("first attempt fails", str(ctx.exception))

    def test_missing_function_fails_the_job(self):
        master = Master(self.config)
        with self.assertLogs("worker", level="ERROR"):
            with self.assertRaises(JobFailedError) as ctx:
                master.map_reduce(self.job, [self.data], self.output, map_fn="no_such_function")
        self.assertIn("no_such_function", str(ctx.exception))


class TestWorker(MapReduceTestCase):

    def test_partition_is_stable_and_in_range(self):
        for key in ("aaronha01", "abadan01", ""):
            rid = partition_for(key, 4)
            self.assertEqual(rid, partition_for(key, 4))
            self.assertTrue(0 <= rid < 4)

    def test_reduce_without_map_output(self):
        worker = Worker(self.config)
        out_path = os.path.join(self.output, "part-00000")
        ack = worker.run_reduce(ReduceTaskRequest(
            job_id=0, task_id=0, job_path=JOB_SCRIPT, function_name="reduce_function",
            partition_id=0, input_dir=os.path.join(self.tmp, "missing"), output_path=out_path,
        ))
        self.assertTrue(ack.ok)
        self.assertEqual(ack.stats, {"in": 0, "out": 0})
        with open(out_path, "r", encoding="utf-8") as f:
            self.assertEqual(f.read(), "")


class TestCommandLine(MapReduceTestCase):

    def run_main(self, argv):
        stdout, stderr = StringIO(), StringIO()
        with redirect_stdout(stdout), redirect_stderr(stderr):
            code = map_reduce.main(argv)
        return code, stdout.getvalue(), stderr.getvalue()

    def test_career_batting(self):
        csv_path = write_csv(self.tmp, "Batting.csv", BATTING_1955)
        code, out, _ = self.run_main(["career_batting", csv_path, self.output, "--reducers", "2"])
        self.assertEqual(code, 0)
        self.assertIn("completed successfully", out)
        self.assertEqual(sorted(os.listdir(self.output)), ["part-00000", "part-00001"])

    def test_generic_job(self):
        csv_path = write_csv(self.tmp, "Batting.csv", BATTING_1955)
        code, _, _ = self.run_main([
            "map_reduce", JOB_SCRIPT, csv_path, "--output", self.output,
            "--iterator", "iterator_fn", "--reducers", "1",
        ])
        self.assertEqual(code, 0)
        results = read_output([os.path.join(self.output, "part-00000")])
        self.assertEqual(set(results), {"aaronha01", "abadan01"})

    def test_missing_input(self):
        code, _, err = self.run_main(["career_batting", os.path.join(self.tmp, "nope.csv"), self.output])
        self.assertEqual(code, 1)
        self.assertIn("Input file not found", err)

    def test_failed_job_exits_non_zero(self):
        csv_path = write_csv(self.tmp, "Batting.csv", [
            "aaronha01,1956,1,ML1,NL,abc,153,609,106,200,34,14,26,92,2,4,37,54,6,2,5,7,21,153",
        ])
        code, _, err = self.run_main(["career_batting", csv_path, self.output, "--log-level", "critical"])
        self.assertEqual(code, 1)
        self.assertIn("MapReduce job failed", err)

    def test_no_command(self):
        code, _, err = self.run_main([])
        self.assertEqual(code, 1)
        self.assertIn("career_batting", err)

    def test_invalid_reducer_count(self):
        csv_path = write_csv(self.tmp, "Batting.csv", BATTING_1955)
        code, _, err = self.run_main(["career_batting", csv_path, self.output, "--reducers", "0"])
        self.assertEqual(code, 1)
        self.assertIn("Invalid configuration", err)
        self.assertFalse(os.path.exists(self.output))


if __name__ == '__main__':
    unittest.main()
