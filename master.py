import threading
import logging
from concurrent import futures
from collections import deque
from typing import List, Optional

from pyarrow.fs import FileType

from mr_config import Config
from worker import Worker, MapTaskRequest, ReduceTaskRequest, resolve_path

LOG = logging.getLogger("master")


class JobFailedError(RuntimeError):
    """A MapReduce job could not be completed."""


class _State:
    """In-memory job registry."""
    def __init__(self):
        # reentrant: a task that finishes before add_done_callback runs its
        # callback on the scheduling thread, which already holds the lock
        self.job_lock = threading.RLock()
        # job id -> {"map_fn": str, "reduce_fn": str, "job_path": str, "num_reducers": int, "pending_maps" : deque,
        #           "pending_reduces": deque, maps_left: int, reduces_left: int, "stage": str, "error": str}
        self.jobs = {}
        self.job_counter = 0
        self.job_done = threading.Condition(self.job_lock)

    def retry_task(self, job_id: int, task: dict):
        job_info = self.jobs.get(job_id)
        if job_info is None:
            return
        if task["type"] == "map":
            job_info["pending_maps"].append(task)
        elif task["type"] == "reduce":
            job_info["pending_reduces"].append(task)


class Master:
    """Splits a job into map and reduce tasks and runs them on a pool of workers."""

    def __init__(self, config: Config, worker: Optional[Worker] = None):
        self.config = config
        self.worker = worker if worker is not None else Worker(config)
        self.fs = self.worker.fs
        self.state = _State()

    def map_reduce(self, job_path: str, input_paths: List[str], output_dir: str,
                   map_fn: str = "map_function", reduce_fn: str = "reduce_function",
                   iterator_fn: Optional[str] = None, num_reducers: Optional[int] = None,
                   job_name: Optional[str] = None) -> List[str]:
        """Run a job to completion and return its output file paths.

        Raises JobFailedError when the output directory already exists or a
        task keeps failing after `task_attempts` tries.
        """
        job_path = resolve_path(self.config, job_path)
        input_paths = [resolve_path(self.config, p) for p in input_paths]
        output_dir = resolve_path(self.config, output_dir).rstrip("/")
        num_reducers = num_reducers or self.config.num_reducers

        if self.fs.get_file_info(output_dir).type != FileType.NotFound:
            raise JobFailedError(f"Output directory {output_dir} already exists")

        job_id = self.create_tasks(job_path, input_paths, output_dir, map_fn, reduce_fn,
                                   iterator_fn, num_reducers)
        LOG.info("Created job %d (%s) with %d map and %d reduce tasks", job_id, job_name or job_path,
                 len(input_paths), num_reducers)

        try:
            with futures.ThreadPoolExecutor(max_workers=self.config.num_workers,
                                            thread_name_prefix="worker") as pool:
                self.schedule(job_id, pool)
        finally:
            # in-flight tasks have finished once the pool has shut down
            temp_dir = f"{output_dir}/_temporary"
            if self.fs.get_file_info(temp_dir).type != FileType.NotFound:
                self.fs.delete_dir(temp_dir)

        with self.state.job_lock:
            job_info = self.state.jobs.pop(job_id)
        if job_info["error"]:
            LOG.error("Job %d failed: %s", job_id, job_info["error"])
            raise JobFailedError(f"Job {job_id} failed: {job_info['error']}")

        LOG.info("Job %d completed", job_id)
        return job_info["output_paths"]

    def create_tasks(self, job_path, data_paths, output_dir, map_fn, reduce_fn,
                     iterator_fn, num_reducers) -> int:
        task_counter = 0
        with self.state.job_lock:
            job_id = self.state.job_counter
            self.state.job_counter += 1
            job_info = {
                "map_fn": map_fn,
                "reduce_fn": reduce_fn,
                "iterator_fn": iterator_fn,
                "job_path": job_path,
                "num_reducers": num_reducers,
                "pending_maps": deque(),        # pending_maps/reduces -> deque of task dicts that are unscheduled
                "pending_reduces": deque(),
                "maps_left": 0,                 # reduces/maps_left -> count of tasks unscheduled OR in-progress
                "reduces_left": num_reducers,
                "intermediate_output_dir": f"{output_dir}/_temporary/job_{job_id}/",
                "output_paths": [],
                "stage": "map",
                "error": None,
                "events": 0,                    # bumped on every task completion
            }
            self.state.jobs[job_id] = job_info
            for fp in data_paths:
                # Create a map task for each file
                job_info["pending_maps"].append({
                    "type": "map",
                    "data_paths": [fp],
                    "task_id": task_counter,
                    "attempts": 0,
                })
                task_counter += 1
            job_info["maps_left"] = task_counter
            for i in range(num_reducers):
                output_path = f"{output_dir}/part-{i:05d}"
                job_info["pending_reduces"].append({
                    "type": "reduce",
                    "task_id": task_counter,
                    "partition_id": i,
                    "output_path": output_path,
                    "attempts": 0,
                })
                job_info["output_paths"].append(output_path)
                task_counter += 1
        return job_id

    def schedule(self, job_id: int, pool: futures.Executor):
        """Hand out tasks until the job is done or has failed.

        Reduce tasks are only released once every map task has succeeded.
        """
        with self.state.job_lock:
            while True:
                job_info = self.state.jobs[job_id]
                seen = job_info["events"]
                if job_info["error"]:
                    return
                if job_info["stage"] == "map" and job_info["maps_left"] == 0:
                    # Transition to reduce stage
                    LOG.info("Job %d: map stage complete, starting reduce stage", job_id)
                    job_info["stage"] = "reduce"
                if job_info["stage"] == "reduce" and job_info["reduces_left"] == 0:
                    job_info["stage"] = "done"
                    return
                pending = job_info["pending_maps"] if job_info["stage"] == "map" else job_info["pending_reduces"]
                while pending:
                    self.assign_task(job_id, pending.popleft(), pool)
                self.state.job_done.wait_for(lambda: job_info["events"] != seen)

    def assign_task(self, job_id: int, task: dict, pool: futures.Executor):
        # called with job_lock held
        job_info = self.state.jobs[job_id]
        task["attempts"] += 1
        if task["type"] == "map":
            req = MapTaskRequest(
                job_id=job_id,
                task_id=task["task_id"],
                job_path=job_info["job_path"],
                function_name=job_info["map_fn"],
                data_paths=task["data_paths"],
                num_reducers=job_info["num_reducers"],
                output_dir=job_info["intermediate_output_dir"],
                iterator_fn=job_info["iterator_fn"],
            )
            fut = pool.submit(self.worker.run_map, req)
        else:
            req = ReduceTaskRequest(
                job_id=job_id,
                task_id=task["task_id"],
                job_path=job_info["job_path"],
                function_name=job_info["reduce_fn"],
                partition_id=task["partition_id"],
                input_dir=job_info["intermediate_output_dir"],
                output_path=task["output_path"],
            )
            fut = pool.submit(self.worker.run_reduce, req)
        fut.add_done_callback(lambda f: self.task_callback(f, job_id, task))

    def task_callback(self, future, job_id: int, task: dict):
        try:
            response = future.result()
        except Exception as e:
            LOG.error("Task %d raised: %s", task["task_id"], e)
            response = None
            message = str(e)
        else:
            message = response.message
        with self.state.job_lock:
            job_info = self.state.jobs.get(job_id)
            if job_info is None:
                return
            if response is not None and response.ok:
                LOG.info("Task %d (%s) completed successfully", task["task_id"], task["type"])
                if task["type"] == "map":
                    job_info["maps_left"] -= 1
                else:
                    job_info["reduces_left"] -= 1
            elif task["attempts"] < self.config.task_attempts:
                LOG.warning("Task %d (%s) failed: %s. Retrying...", task["task_id"], task["type"], message)
                self.state.retry_task(job_id, task)
            elif not job_info["error"]:
                job_info["error"] = f"{task['type']} task {task['task_id']} failed after {task['attempts']} attempt(s): {message}"
            job_info["events"] += 1
            self.state.job_done.notify_all()
