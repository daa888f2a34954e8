#!/usr/bin/env python3
#
# Script to prune old images from a docker-registry, keeping
# repositories that have nothing but latest and version tags intact.
#
# Copyright (C) 2024, Nicolai Langfeldt, Schibsted Products and Technology
#
# Prerequisites:
# - pip install requests python-dateutil
# - The registry must have deletes enabled
#   (REGISTRY_STORAGE_DELETE_ENABLED=true)
# - After running this script let loose the docker-registry
#   garbage-collector inside the docker container:
#   `docker exec -it $CONTAINER /bin/registry garbage-collect /etc/docker/registry/config.yml`
#
# How it works:
# - All repositories are listed, then all their tags.
# - A repository is only looked at if it has more tags than
#   1 + (latest tag) + (tags starting with "v").  If it does, ALL its
#   tags are candidates, latest and version tags included.
# - Each candidate tag is resolved to its config blob and creation time.
#   Images created more than --retention seconds ago are deleted.
# - Within each stage every request is queued at once, --jobs of them
#   run at the same time, and all of them are waited for.  If any of
#   them failed the run stops there with the first error.
# - Deletes are done one at a time and stop at the first failure.
#   What was deleted before that stays deleted.
#
# Bugs:
# - Multiple tags can refer to the same image.  Each of them gets its
#   own delete request.
#
# Usage:
#   Look first:
#     ./registrypruner.py --retention 2592000 --dry-run docker.example.com
#   Then:
#     ./registrypruner.py --retention 2592000 docker.example.com
#

import sys
import time
import argparse
from functools import partial
from multiprocessing.pool import ThreadPool

from Spinner import Spinner
from Registry import Registry, RegistryError
from retentionrules import *

debug = False

# Threads per stage.  Every item still gets its own task, they queue
# for a free thread.
jobs = 16


def collect_tasks(function, items, label=""):
    """Call function on every item, up to jobs of them at the same
    time.  Every call is allowed to finish before anything is looked
    at.  Returns the results in the same order as items, or raises the
    exception of the first failed item (in item order).

    Ctrl-C stops handing out queued items, but calls already sent to
    the registry are waited for before the interrupt is passed on."""

    if len(items) == 0:
        return []

    spinner = Spinner(label, total=len(items))
    pool = ThreadPool(min(jobs, len(items)))

    try:
        tasks = [ pool.apply_async(function, (item,)) for item in items ]
        for task in tasks:
            task.wait()
            spinner.next()
    except KeyboardInterrupt:
        pool.terminate()
        raise
    finally:
        pool.close()
        pool.join()
        spinner.done()

    return [ task.get() for task in tasks ]


## The stages, one registry call each

def list_tags(reg, repository):
    return [ Tag(name, repository) for name in reg.get_tags(repository.name) ]


def resolve_digest(reg, tag):
    return ManifestDigest(reg.get_config_digest(tag.repository.name, tag.name), tag)


def inspect_blob(reg, manifest):
    created = reg.get_created(manifest.tag.repository.name, manifest.digest)
    return ImageRecord(manifest, created)


def filter_repositories(tags):
    """Drop every tag of the repositories that have no free tags"""

    to_process = []

    for repository, repo_tags in group_by_repository(tags).items():
        latest_tags = count_latest(repo_tags)
        version_tags = count_versions(repo_tags)

        if is_eligible(repo_tags):
            if debug:
                print("Continuing with repository %s, it has free tags "
                      "(%d tags, %d version tags, %d latest tags)" %
                      (repository.name, len(repo_tags), version_tags, latest_tags),
                      file=sys.stderr)
            to_process.extend(repo_tags)
        elif debug:
            print("Not continuing with repository %s, it has no free tags "
                  "(%d tags, %d version tags, %d latest tags)" %
                  (repository.name, len(repo_tags), version_tags, latest_tags),
                  file=sys.stderr)

    return to_process


## Output helpers

def fmt_duration(seconds):
    if seconds >= 1:
        return "%ds" % seconds
    if seconds >= 0.001:
        return "%dms" % (seconds * 1000)
    return "%dµs" % (seconds * 1000000)


def fmt_age(age):
    if age > 86400:
        return "%d Days" % (age // 86400)
    if age > 3600:
        return "%d Hours" % (age // 3600)
    if age > 60:
        return "%d Minutes" % (age // 60)
    return "%d Seconds" % age


## Deletion

def prune(reg, records, dry_run, now):
    """Delete the given images one by one.  The first failed delete
    stops the pruning by raising.  In a dry run just list them."""

    if dry_run:
        print("Dry run is enabled. If it were not, the following images would be deleted:")
        for record in records:
            print("- %s (Age: %s)" % (record.path, fmt_age(now - record.created)))
        return

    for record in records:
        print("Deleting image %s" % record.path)
        reg.delete_manifest(record.repository.name, record.manifest.digest)


def process(reg, retention, dry_run=False, repositories=None, now=None):
    """Run the whole pipeline against reg.  Returns the list of
    ImageRecords that were deleted (or would have been, on a dry run).
    """

    if debug: print("Collecting repositories", file=sys.stderr)
    if not repositories:
        repositories = reg.get_repositories()
    repositories = [ Repository(name) for name in dict.fromkeys(repositories) ]

    if debug: print("Collecting tags", file=sys.stderr)
    tags = [ tag
             for repo_tags in collect_tasks(partial(list_tags, reg), repositories,
                                            "Collecting tags")
             for tag in repo_tags ]

    if debug: print("Filtering repositories to keep", file=sys.stderr)
    to_process = filter_repositories(tags)

    if debug: print("Collecting digests", file=sys.stderr)
    digests = collect_tasks(partial(resolve_digest, reg), to_process, "Collecting digests")

    if debug: print("Collecting blobs", file=sys.stderr)
    records = collect_tasks(partial(inspect_blob, reg), digests, "Collecting blobs")

    if debug: print("Filtering tags", file=sys.stderr)
    if now is None:
        now = int(time.time())
    to_delete = select_deletable(records, delete_before(retention, now))

    prune(reg, to_delete, dry_run, now)

    return to_delete


def retention_seconds(value):
    try:
        seconds = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError("%r is not a whole number of seconds" % value)

    if seconds < 0:
        raise argparse.ArgumentTypeError("retention can not be negative")

    return seconds


def positive_int(value):
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError("%r is not a whole number" % value)

    if number < 1:
        raise argparse.ArgumentTypeError("must be at least 1")

    return number


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='Prune old images from docker-registry')
    parser.add_argument('--retention', type=retention_seconds, required=True, \
                        help='Delete images older than this many seconds')
    parser.add_argument('-n', '--dry-run', action='store_true', \
                        help='Only show what would be deleted', default=False)
    parser.add_argument('-r', '--repository', action='append', \
                        help='Work on this repository instead of all (can be repeated)')
    parser.add_argument('-j', '--jobs', type=positive_int, default=jobs, \
                        help='Number of registry requests to run at the same time (default %(default)s)')
    parser.add_argument('-D', '--debug', action='store_true', \
                        help='Show progress of the stages', default=False)
    parser.add_argument('--trace', action='store_true', \
                        help='Debug and show every registry request', default=False)
    parser.add_argument('server', help="Registry server (host name or URL)")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)

    global debug, jobs
    debug = args.debug or args.trace
    jobs = args.jobs

    reg = Registry(args.server, debug=args.trace)

    if args.dry_run:
        print("***Dry run is enabled. No images will be deleted!***")

    if hasattr(sys.stdout, "reconfigure"):
        sys.stdout.reconfigure(line_buffering=True)

    start = time.monotonic()

    try:
        reg.check()
        process(reg, args.retention, args.dry_run, args.repository)
    except RegistryError as e:
        sys.exit("Error: %s" % e)
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        sys.exit(1)

    print("Done. Took %s" % fmt_duration(time.monotonic() - start))


if __name__ == "__main__":
    main()
