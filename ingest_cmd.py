"""
Add and delete commands: hash files into measurements, create and remove
links between entities, and cascade deletes.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from common import (
    DEFAULT_WORKERS,
    FileInfo,
    HashResult,
    HASH_BATCH_SIZE,
    IOFailure,
    InvalidScope,
    NotFound,
    PROGRESS_EVERY,
    build_report,
    iter_files,
)
from digest import DEFAULT_ALGORITHM, Algorithm, compute_file, select
from scope import FilterContext


ProgressCallback = Callable[[int, Dict[str, int]], None]


def compute_hash_task(file_info: FileInfo, algorithm: Algorithm) -> HashResult:
    """Hash one file, capturing I/O errors in the result (for use in thread pool)."""
    try:
        digest = compute_file(file_info.path, algorithm)
        return HashResult(file_info=file_info, digest=digest)
    except OSError as exc:
        failure = IOFailure(file_info.path_str, exc.strerror or str(exc))
        return HashResult(file_info=file_info, error=failure)


def _hash_batch(batch: List[FileInfo], algorithm: Algorithm, workers: int) -> List[HashResult]:
    if workers <= 1:
        results = [compute_hash_task(fi, algorithm) for fi in batch]
    else:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [executor.submit(compute_hash_task, fi, algorithm) for fi in batch]
            results = [f.result() for f in as_completed(futures)]
    results.sort(key=lambda r: r.file_info.path_str)
    return results


def _walk_root(scope: FilterContext) -> Path:
    root = scope.dir_path
    if root is None:
        root = Path(scope.db.require("directory", scope.dir_id)["path"])
    if not root.is_dir():
        raise InvalidScope(f"Directory {root} does not exist or is not a directory")
    return root


def _collect_targets(
    scope: FilterContext,
    recursive: bool,
    failures: List[IOFailure],
) -> List[FileInfo]:
    """Files to measure: the scoped file, or the regular files under the scoped directory.

    Directories that cannot be read during the walk are appended to failures.
    """
    db = scope.db
    if scope.fid is not None:
        targets = []
        for file_id in scope.file_ids():
            row = db.require("file", file_id)
            location = db.file_location(file_id)
            targets.append(
                FileInfo(
                    path=location,
                    path_str=str(location),
                    dir_id=row["dir_id"],
                    rel_path=row["path"],
                    file_id=file_id,
                )
            )
        return targets
    if scope.dir_id is None:
        return []

    root = _walk_root(scope)

    def on_error(path: Path, exc: OSError) -> None:
        failures.append(IOFailure(str(path), exc.strerror or str(exc)))

    targets = []
    for file_path in iter_files(root, recursive=recursive, on_error=on_error):
        targets.append(
            FileInfo(
                path=file_path,
                path_str=str(file_path),
                dir_id=scope.dir_id,
                rel_path=file_path.relative_to(root).as_posix(),
            )
        )
    return targets


def _apply_result(
    result: HashResult,
    scope: FilterContext,
    algorithm: Algorithm,
    stats: Dict[str, int],
    added: List[Dict[str, object]],
    updated: List[Dict[str, object]],
    errors: List[Dict[str, object]],
) -> None:
    """Write one hashed file in its own transaction."""
    fi = result.file_info
    if result.error is not None:
        stats["errors"] += 1
        logging.warning(f"Failed to hash {result.error}")
        errors.append({"path": result.error.path, "error": result.error.reason})
        return

    db = scope.db
    with db.transaction():
        file_id = fi.file_id
        if file_id is None:
            file_id, created = db.get_or_create_file(fi.dir_id, fi.rel_path)
            if created:
                stats["files_created"] += 1
        outcome, previous = db.upsert_measurement(file_id, algorithm.name, result.digest)
        if scope.pid is not None and db.link("product_file", scope.pid, file_id):
            stats["linked"] += 1
        if scope.cid is not None and db.link("component_file", scope.cid, file_id):
            stats["linked"] += 1

    stats[outcome] += 1
    entry: Dict[str, object] = {
        "path": fi.path_str,
        "fid": file_id,
        "hash": result.digest.hex(),
    }
    if outcome == "added":
        added.append(entry)
    elif outcome == "updated":
        entry["previous_hash"] = previous.hex()
        updated.append(entry)
    logging.debug(f"{outcome}: {fi.path_str} {result.digest.hex()}")


def ingest(
    scope: FilterContext,
    default_algorithm: Optional[Algorithm] = None,
    recursive: bool = False,
    workers: int = DEFAULT_WORKERS,
    progress_callback: Optional[ProgressCallback] = None,
) -> Dict[str, object]:
    """Hash the scoped file or directory and upsert one measurement per file.

    The algorithm selected in the scope wins over default_algorithm.

    Unreadable files are recorded in the report and skipped. A store failure
    aborts the walk; files written before it stay committed.
    """
    algorithm = scope.algorithm or default_algorithm or select(DEFAULT_ALGORITHM)
    stats = {
        "scanned": 0,
        "added": 0,
        "updated": 0,
        "unchanged": 0,
        "errors": 0,
        "files_created": 0,
        "linked": 0,
    }
    added: List[Dict[str, object]] = []
    updated: List[Dict[str, object]] = []
    errors: List[Dict[str, object]] = []
    total_processed = 0
    last_progress_log = 0

    def emit_progress() -> None:
        if progress_callback:
            progress_callback(total_processed, dict(stats))

    def log_progress() -> None:
        nonlocal last_progress_log
        if total_processed - last_progress_log >= PROGRESS_EVERY:
            logging.info(
                f"Progress: scanned={stats['scanned']}, added={stats['added']}, "
                f"updated={stats['updated']}, unchanged={stats['unchanged']}, "
                f"errors={stats['errors']}"
            )
            last_progress_log = total_processed

    failures: List[IOFailure] = []
    targets = _collect_targets(scope, recursive, failures)
    for failure in failures:
        stats["errors"] += 1
        errors.append({"path": failure.path, "error": failure.reason})
    if workers > 1:
        logging.info(f"Using {workers} worker threads for hashing")

    for start in range(0, len(targets), HASH_BATCH_SIZE):
        batch = targets[start:start + HASH_BATCH_SIZE]
        stats["scanned"] += len(batch)
        for result in _hash_batch(batch, algorithm, workers):
            _apply_result(result, scope, algorithm, stats, added, updated, errors)
            total_processed += 1
        log_progress()
        emit_progress()

    for entries in (added, updated, errors):
        entries.sort(key=lambda entry: entry["path"])

    logging.info(
        f"Ingest summary ({algorithm.name}): {stats['scanned']} files | "
        f"added: {stats['added']} | updated: {stats['updated']} | "
        f"unchanged: {stats['unchanged']} | errors: {stats['errors']}"
    )
    return {
        "algorithm": algorithm.name,
        "stats": stats,
        "added": added,
        "updated": updated,
        "errors": errors,
    }


def _link_pairs(scope: FilterContext, actions: List[Dict[str, object]]) -> int:
    """Create the entity links implied by the scope. Returns how many were new."""
    pairs = []
    if scope.did is not None and scope.kid is not None:
        pairs.append(("device_key", scope.did, scope.kid))
    if scope.did is not None and scope.pid is not None:
        pairs.append(("device_product", scope.did, scope.pid))
    if scope.pid is not None and scope.cid is not None:
        pairs.append(("product_component", scope.pid, scope.cid))
    # walked files are linked as they are measured
    if scope.fid is not None and scope.pid is not None:
        pairs.append(("product_file", scope.pid, scope.fid))
    if scope.fid is not None and scope.cid is not None:
        pairs.append(("component_file", scope.cid, scope.fid))
    return _run_pairs(scope.db.link, "link", pairs, actions)


def _run_pairs(fn, verb: str, pairs, actions: List[Dict[str, object]]) -> int:
    changed = 0
    for relation, left_id, right_id in pairs:
        if fn(relation, left_id, right_id):
            changed += 1
            logging.info(f"{verb.capitalize()}ed {relation} {left_id} <-> {right_id}")
        else:
            logging.info(f"{relation} {left_id} <-> {right_id}: nothing to {verb}")
        actions.append({"action": verb, "relation": relation, "ids": [left_id, right_id]})
    return changed


def add(
    scope: FilterContext,
    default_algorithm: Optional[Algorithm] = None,
    recursive: bool = False,
    workers: int = DEFAULT_WORKERS,
    progress_callback: Optional[ProgressCallback] = None,
    resolve_scope: Optional[Callable[[], None]] = None,
) -> Dict[str, object]:
    """The `--add` operation.

    resolve_scope, when given, applies the invocation's filters in the same
    transaction as the owner and link updates, so a filter that fails leaves
    no rows behind. File measurements are committed per file afterwards.
    """
    run_started = int(time.time())
    db = scope.db
    actions: List[Dict[str, object]] = []
    details: Dict[str, object] = {"actions": actions}
    stats: Dict[str, int] = {"linked": 0}

    with db.transaction():
        if resolve_scope is not None:
            resolve_scope()

        if scope.owner is not None:
            if scope.did is not None:
                db.set_device_owner(scope.did, scope.owner)
                logging.info(f"Owner of device {scope.did} set to '{scope.owner}'")
                actions.append({"action": "set_owner", "did": scope.did, "owner": scope.owner})
            else:
                logging.warning(f"Owner '{scope.owner}' ignored: no device selected")

        stats["linked"] += _link_pairs(scope, actions)

        measures = scope.fid is not None or scope.dir_id is not None
        if measures and scope.fid is None:
            _walk_root(scope)
        elif not measures and not actions and scope.is_empty():
            raise InvalidScope("Nothing to add: set a file, directory or a pair of entities to link")

    if measures:
        result = ingest(
            scope,
            default_algorithm=default_algorithm,
            recursive=recursive,
            workers=workers,
            progress_callback=progress_callback,
        )
        ingest_stats = result.pop("stats")
        ingest_stats["linked"] += stats["linked"]
        stats = ingest_stats
        details.update(result)

    algorithm = details.pop("algorithm", None)
    return build_report(
        db_uri=db.uri,
        algorithm=algorithm,
        stats=stats,
        run_started=run_started,
        run_finished=int(time.time()),
        mode="add",
        details=details,
    )


def delete(scope: FilterContext) -> Dict[str, object]:
    """The `--delete` operation; the first rule matching the scope applies."""
    run_started = int(time.time())
    db = scope.db
    actions: List[Dict[str, object]] = []
    stats = {"deleted": 0, "unlinked": 0}
    file_scope = scope.fid is not None or scope.dir_id is not None

    def unlink_pairs(pairs) -> None:
        stats["unlinked"] += _run_pairs(db.unlink, "unlink", pairs, actions)

    with db.transaction():
        if file_scope and scope.algorithm is not None:
            file_ids = scope.file_ids()
            removed = db.delete_measurements(file_ids, scope.algorithm.name)
            stats["deleted"] += removed
            actions.append({
                "action": "delete_measurements",
                "algorithm": scope.algorithm.name,
                "fids": file_ids,
                "rows": removed,
            })
            logging.info(f"Deleted {removed} {scope.algorithm.name} measurements")
        elif scope.did is not None and scope.kid is not None:
            unlink_pairs([("device_key", scope.did, scope.kid)])
        elif scope.did is not None and scope.pid is not None:
            unlink_pairs([("device_product", scope.did, scope.pid)])
        elif scope.pid is not None and scope.cid is not None:
            unlink_pairs([("product_component", scope.pid, scope.cid)])
        elif scope.pid is not None and file_scope:
            unlink_pairs([("product_file", scope.pid, fid) for fid in scope.file_ids()])
        elif scope.cid is not None and file_scope:
            unlink_pairs([("component_file", scope.cid, fid) for fid in scope.file_ids()])
        else:
            for kind, entity_id in _delete_targets(scope):
                counts = db.delete(kind, entity_id)
                stats["deleted"] += sum(counts.values())
                actions.append({"action": "delete", "kind": kind, "id": entity_id, "rows": counts})

    return build_report(
        db_uri=db.uri,
        algorithm=scope.algorithm.name if scope.algorithm else None,
        stats=stats,
        run_started=run_started,
        run_finished=int(time.time()),
        mode="delete",
        details={"actions": actions},
    )


def _delete_targets(scope: FilterContext) -> List[Tuple[str, int]]:
    """Entities removed when no link rule matched.

    Exactly one entity may be selected. A file together with its directory
    counts as one selection, narrowed to the files in that directory.
    """
    selected = [
        (kind, entity_id)
        for kind, entity_id in (
            ("file", scope.fid),
            ("directory", scope.dir_id),
            ("component", scope.cid),
            ("product", scope.pid),
            ("key", scope.kid),
            ("device", scope.did),
        )
        if entity_id is not None
    ]
    if not selected:
        raise InvalidScope("Nothing to delete: no entity selected")
    kinds = [kind for kind, _ in selected]
    if kinds == ["file", "directory"]:
        file_ids = scope.file_ids()
        if not file_ids:
            raise NotFound(f"No file matches {scope.describe()}")
        return [("file", file_id) for file_id in file_ids]
    if len(selected) > 1:
        raise InvalidScope(
            f"Cannot delete with {', '.join(kinds)} selected: "
            "select a single entity or a pair of linked entities"
        )
    return selected
