import os
import socket
import zlib
import logging
import importlib.util
from dataclasses import dataclass, field
from typing import List, Optional

import pyarrow as pa
import pyarrow.parquet as pq

from pyarrow import fs
from pyarrow.fs import FileSelector, FileType

from mr_config import Config, setup_hdfs_classpath

LOG = logging.getLogger("worker")

WORKER_ID = socket.gethostname()

PARTITION_SCHEMA = pa.schema([("key", pa.string()), ("value", pa.string())])


@dataclass
class MapTaskRequest:
    job_id: int
    task_id: int
    job_path: str
    function_name: str
    data_paths: List[str]
    num_reducers: int
    output_dir: str
    iterator_fn: Optional[str] = None


@dataclass
class ReduceTaskRequest:
    job_id: int
    task_id: int
    job_path: str
    function_name: str
    partition_id: int
    input_dir: str
    output_path: str


@dataclass
class Ack:
    ok: bool
    message: str = ""
    stats: dict = field(default_factory=dict)


def get_filesystem(config: Config):
    if config.filesystem == "hdfs":
        setup_hdfs_classpath()
        return fs.HadoopFileSystem(config.hdfs_host, config.hdfs_port)
    return fs.LocalFileSystem()


def resolve_path(config: Config, path: str) -> str:
    """Local paths must be absolute for pyarrow; HDFS paths are used as given."""
    if config.filesystem == "local":
        return os.path.abspath(path)
    return path


def ensure_parent_dir(filesystem, path: str) -> None:
    parent = path.rsplit("/", 1)[0] if "/" in path else ""
    if parent:
        filesystem.create_dir(parent, recursive=True)


def load_user_function(filesystem, job_path, function_name):
    with filesystem.open_input_stream(job_path) as f:
        code = f.read().decode("utf-8")
    spec = importlib.util.spec_from_loader("user_job", loader=None)
    module = importlib.util.module_from_spec(spec)
    exec(compile(code, job_path, "exec"), module.__dict__)
    fn = getattr(module, function_name, None)
    if fn is None:
        raise AttributeError(f"{function_name} not found in {job_path}")
    return fn


def partition_for(key: str, num_reducers: int) -> int:
    # crc32 instead of hash(): str hashes are salted per process
    return zlib.crc32(key.encode("utf-8")) % num_reducers


def write_lines(filesystem, path, lines):
    ensure_parent_dir(filesystem, path)
    with filesystem.open_output_stream(path) as out:
        for line in lines:
            if not line.endswith("\n"):
                line = line + "\n"
            out.write(line.encode("utf-8"))


class Worker:
    """Runs map and reduce tasks handed out by the master."""

    def __init__(self, config: Config, filesystem=None, worker_id: str = WORKER_ID):
        self.config = config
        self.fs = filesystem if filesystem is not None else get_filesystem(config)
        self.worker_id = worker_id

    def _records(self, data_path, iterator_fn):
        with self.fs.open_input_stream(data_path) as f:
            file_bytes = f.readall()
        if iterator_fn:
            metadata = {"size": len(file_bytes), "file_path": data_path}
            yield from iterator_fn(file_bytes, metadata)
        else:
            yield from enumerate(file_bytes.decode("utf-8", errors="replace").splitlines())

    def run_map(self, request: MapTaskRequest) -> Ack:
        LOG.info("[map] worker=%s job=%d task_id=%d", self.worker_id, request.job_id, request.task_id)
        try:
            map_fn = load_user_function(self.fs, request.job_path, request.function_name)
            iterator_fn = load_user_function(self.fs, request.job_path, request.iterator_fn) if request.iterator_fn else None
            partitions = [
                {"key": [], "value": []}
                for _ in range(request.num_reducers)
            ]

            records_in = 0
            records_out = 0
            for data_path in request.data_paths:
                for key, val in self._records(data_path, iterator_fn):
                    records_in += 1
                    for k, v in map_fn(key, val):
                        rid = partition_for(str(k), request.num_reducers)
                        partitions[rid]["key"].append(str(k))
                        partitions[rid]["value"].append(str(v))
                        records_out += 1

            for rid, partition in enumerate(partitions):
                out_path = f"{request.output_dir.rstrip('/')}/{self.worker_id}_{request.task_id}_{rid}.parquet"
                table = pa.table(partition, schema=PARTITION_SCHEMA)
                ensure_parent_dir(self.fs, out_path)
                with self.fs.open_output_stream(out_path) as out:
                    pq.write_table(table, out)
                LOG.debug("[map] wrote partition rid=%d -> %s", rid, out_path)
            LOG.info("[map] task %d complete (in=%d, out=%d)", request.task_id, records_in, records_out)
            return Ack(ok=True, message="map done", stats={"in": records_in, "out": records_out})
        except Exception as e:
            LOG.error("[map] task %d failed: %s", request.task_id, e, exc_info=True)
            return Ack(ok=False, message=str(e))

    def run_reduce(self, request: ReduceTaskRequest) -> Ack:
        LOG.info("[reduce] worker=%s job=%d task_id=%d partition=%d",
                 self.worker_id, request.job_id, request.task_id, request.partition_id)
        try:
            reduce_fn = load_user_function(self.fs, request.job_path, request.function_name)
            selector = FileSelector(request.input_dir, recursive=False, allow_not_found=True)
            infos = self.fs.get_file_info(selector)

            files = sorted(
                info.path
                for info in infos
                if info.type == FileType.File and info.path.endswith(f"_{request.partition_id}.parquet")
            )

            tables = [pq.read_table(path, filesystem=self.fs) for path in files]
            if tables:
                merged = pa.concat_tables(tables)
            else:
                merged = PARTITION_SCHEMA.empty_table()

            df = merged.to_pandas()
            total_in = len(df)
            if df.empty:
                grouped = {}
            else:
                grouped = df.groupby("key", sort=True)["value"].apply(list)

            out_lines = []
            for k, values in grouped.items():
                for ok, ov in reduce_fn(k, values):
                    out_lines.append(f"{ok}{self.config.output_separator}{ov}")

            write_lines(self.fs, request.output_path, out_lines)
            LOG.info("[reduce] task %d complete (in=%d, out=%d)", request.task_id, total_in, len(out_lines))
            return Ack(ok=True, message="reduce done", stats={"in": total_in, "out": len(out_lines)})
        except Exception as e:
            LOG.error("[reduce] task %d failed: %s", request.task_id, e, exc_info=True)
            return Ack(ok=False, message=str(e))
