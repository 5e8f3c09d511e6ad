from zope.interface import Attribute
from zope.interface import Interface


class IBackendClient(Interface):
    """Capabilities of the remote object store used by the driver."""

    def put_small(key, data, ctx=None):
        """Store ``data`` under ``key`` in a single request."""

    def put_segmented(key, segments, ctx=None):
        """Store the concatenation of copy and direct segments under ``key``."""

    def get_range(key, offset=0, ctx=None):
        """Return a readable stream starting at ``offset``."""

    def head(key, ctx=None):
        """Return a ListItem for ``key``."""

    def delete_one(key, ctx=None):
        """Delete one object."""

    def move_one(src_key, dst_key, overwrite=True, ctx=None):
        """Rename an object."""

    def list_page(prefix, delimiter="", marker="", limit=1000, ctx=None):
        """Return one ListPage."""

    def sign_private_url(key, expires=3600, base_url=None):
        """Return a time-bounded signed download URL."""


class IFileWriter(Interface):
    """A single-use write session for one path."""

    size = Attribute("Bytes accepted so far, including the resume offset")

    def write(data):
        """Append bytes to the session."""

    def close():
        """Flush and finish the upload without committing."""

    def commit():
        """Flush, finish the upload and make the content visible."""

    def cancel():
        """Abandon the session and remove what was written."""


class ICacheInvalidator(Interface):
    """Asynchronous CDN refresh of changed keys."""

    def enqueue(key):
        """Schedule ``key`` for refresh, blocking while the queue is full.

        Returns False when the key was dropped.
        """

    def close():
        """Stop the workers."""


class IStorageDriver(Interface):
    """Uniform blob storage contract consumed by the registry."""

    name = Attribute("Registration name of the driver")

    def get_content(path, ctx=None):
        """Return the whole content stored at ``path``."""

    def put_content(path, content, ctx=None):
        """Store ``content`` at ``path``."""

    def reader(path, offset=0, ctx=None):
        """Return a readable stream of ``path`` starting at ``offset``."""

    def writer(path, append=False, ctx=None):
        """Return an IFileWriter for ``path``."""

    def stat(path, ctx=None):
        """Return FileInfo for ``path``."""

    def list(path, ctx=None):
        """Return the direct children of ``path``."""

    def move(source_path, dest_path, ctx=None):
        """Move an object."""

    def delete(path, ctx=None):
        """Recursively delete ``path``."""

    def url_for(path, options=None):
        """Return a signed URL for ``path``."""
