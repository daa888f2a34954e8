#
# Retention rules for the registry pruner.
#
# (C) 2024, Nicolai Langfeldt, Schibsted Products and Technology
#

"""The things the pruner passes between its stages and the rules that
decide what gets deleted.

The module declares:

* Repository, Tag, ManifestDigest, ImageRecord: one run's view of the
  registry.  Each refers back to the thing it was found from.
* group_by_repository(tags): Tags grouped by their repository
* required_tags(tags): How many tags a repository must have before it
  is touched
* is_eligible(tags): Whether a repository has tags beyond the required ones
* delete_before(retention, now): The age cutoff as epoch seconds
* select_deletable(records, cutoff): The records older than the cutoff
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class Repository:
    name: str


@dataclass(frozen=True)
class Tag:
    name: str
    repository: Repository


@dataclass(frozen=True)
class ManifestDigest:
    """Digest resolved from one tag.  Two tags pointing at the same
    image give two of these."""

    digest: str
    tag: Tag


@dataclass(frozen=True)
class ImageRecord:
    manifest: ManifestDigest
    created: int

    @property
    def repository(self):
        return self.manifest.tag.repository

    @property
    def path(self):
        return "%s/%s" % (self.repository.name, self.manifest.tag.name)


def group_by_repository(tags):
    """Returns a dict of repository -> list of its tags, in the order the
    repositories were first seen."""

    groups = {}
    for tag in tags:
        groups.setdefault(tag.repository, []).append(tag)

    return groups


def count_latest(tags):
    """1 if there is a tag named latest, else 0"""

    return 1 if any(tag.name == "latest" for tag in tags) else 0


def count_versions(tags):
    return sum(1 for tag in tags if tag.name.startswith("v"))


def required_tags(tags):
    """The number of tags a repository must exceed to be touched at all:
    one free slot, the latest tag and the version tags.  The latest and
    version tags are not protected beyond this; once the repository
    passes they are judged by age like any other tag."""

    return 1 + count_latest(tags) + count_versions(tags)


def is_eligible(tags):
    return len(tags) > required_tags(tags)


def delete_before(retention, now):
    """Epoch seconds; anything created strictly before this goes"""

    return now - retention


def is_deletable(record, cutoff):
    # Exactly at the cutoff is kept
    return record.created < cutoff


def select_deletable(records, cutoff):
    return [record for record in records if is_deletable(record, cutoff)]
