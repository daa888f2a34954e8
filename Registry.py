#
# Docker registry API for python, the parts the pruner needs.
#
# (C) 2024, Nicolai Langfeldt, Schibsted Products and Technology
#
#
# Docker registry API:
# https://docs.docker.com/registry/spec/api/
#

import sys
import calendar
from datetime import timezone
from urllib.parse import urljoin

import requests
from dateutil import parser

MANIFEST_V2 = "application/vnd.docker.distribution.manifest.v2+json"


class RegistryError(Exception):
    """Something went wrong talking to the registry.  Fatal for the run."""


class TransportError(RegistryError):
    """The request never got a HTTP answer: connection refused, DNS,
    timeouts and the like."""


class StatusError(RegistryError):
    """The registry answered with a non-2xx status"""

    def __init__(self, status_code, url, text=""):
        self.status_code = status_code
        self.url = url
        self.text = text
        msg = "%s getting %s" % (status_code, url)
        if text:
            msg += " (%s)" % text
        super().__init__(msg)


class ParseError(RegistryError):
    """The response body is not what the API promises"""


def _get_link(headers):
    """Get URL from the Link header if rel is "next" and return it.
    Return None if no next link is found."""

    link_header = headers.get('Link')
    if not link_header:
        return None

    for link in link_header.split(','):
        if 'rel="next"' in link:
            return link.split('<')[1].split('>')[0]

    return None


def to_epoch(created):
    """Parse a ISO-8601 timestamp and return unix epoch seconds.  A
    timestamp without offset is taken to be UTC, which is what the
    registry writes anyway."""

    if not isinstance(created, str):
        raise ParseError("Timestamp is not a string: %r" % (created,))

    try:
        when = parser.isoparse(created)
    except (ValueError, OverflowError) as e:
        raise ParseError("Unparseable timestamp %r: %s" % (created, e)) from e

    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)

    return calendar.timegm(when.utctimetuple())


class Registry:
    """Class to handle the docker registry API.

    Every call either returns what was asked for or raises one of
    TransportError, StatusError or ParseError.  Nothing is retried.

    Example:

       import Registry

       reg = Registry.Registry("registry.example.com")
       reg.check()

       for repo_name in reg.get_repositories():
           for tag in reg.get_tags(repo_name):
               digest = reg.get_config_digest(repo_name, tag)
               print("%s:%s created %d" %
                     (repo_name, tag, reg.get_created(repo_name, digest)))
    """

    def __init__(self, server, debug=False):
        """Server is a host name, in which case https is used, or a URL
        like http://localhost:5000.  With debug set every request is
        printed on stderr."""

        if "://" not in server:
            server = "https://%s" % server

        self.endpoint = server.rstrip("/")
        self.debug = debug


    def _request(self, method, url, **kwargs):
        if self.debug:
            print("-- %s %s" % (method.upper(), url), file=sys.stderr)

        try:
            r = getattr(requests, method)(url, **kwargs)
        except requests.exceptions.RequestException as e:
            raise TransportError("%s %s failed: %s" % (method.upper(), url, e)) from e

        if self.debug:
            print("--- Result: %s" % r.status_code, file=sys.stderr)

        if not 200 <= r.status_code < 300:
            raise StatusError(r.status_code, url, r.text.rstrip())

        return r


    def _json(self, r, url):
        try:
            data = r.json()
        except ValueError as e:
            raise ParseError("Invalid JSON from %s: %s" % (url, e)) from e

        if not isinstance(data, dict):
            raise ParseError("Expected a JSON object from %s" % url)

        return data


    def _json_list(self, path, tl_key):
        """Get path and return the list found under tl_key, following
        the Link headers for pagination.  A missing or null tl_key is
        an empty list, the registry does that for empty repositories.
        """

        url = self.endpoint + path
        all_data = []
        seen = set()

        while url:
            if url in seen:
                raise ParseError("Pagination of %s loops back to %s" % (path, url))
            seen.add(url)

            r = self._request("get", url)
            data = self._json(r, url)

            page = data.get(tl_key)
            if page is not None:
                if not isinstance(page, list) or \
                   not all(isinstance(x, str) for x in page):
                    raise ParseError("%s in %s is not a list of strings" % (tl_key, url))
                all_data.extend(page)

            link = _get_link(r.headers)
            url = urljoin(url, link) if link else None

        return all_data


    def check(self):
        """Check that the registry is there and version 2"""

        self._request("get", "%s/v2/" % self.endpoint)


    def get_repositories(self):
        """Returns a list of repository names in the registry."""

        return self._json_list("/v2/_catalog", "repositories")


    def get_tags(self, repo):
        """Get all tag names for a repo"""

        return self._json_list("/v2/%s/tags/list" % repo, "tags")


    def get_config_digest(self, repo, tag):
        """Get the v2 manifest of repo:tag and return the digest of
        the image config blob it refers to."""

        url = "%s/v2/%s/manifests/%s" % (self.endpoint, repo, tag)
        r = self._request("get", url, headers={"Accept": MANIFEST_V2})
        manifest = self._json(r, url)

        config = manifest.get("config")
        if not isinstance(config, dict) or not isinstance(config.get("digest"), str):
            raise ParseError("No config digest in manifest for %s:%s" % (repo, tag))

        return config["digest"]


    def get_created(self, repo, digest):
        """Get the config blob and return its creation time as unix
        epoch seconds"""

        url = "%s/v2/%s/blobs/%s" % (self.endpoint, repo, digest)
        r = self._request("get", url)
        blob = self._json(r, url)

        if "created" not in blob:
            raise ParseError("No created timestamp in blob %s@%s" % (repo, digest))

        return to_epoch(blob["created"])


    ## Delete functions

    def delete_manifest(self, repo, digest):
        """Delete the manifest for a given digest in a repo.  The API
        does not support deleting by repository:tag only by
        repository:digest.  The blobs stay until the registry garbage
        collector is run."""

        self._request("delete", "%s/v2/%s/manifests/%s" % (self.endpoint, repo, digest))
