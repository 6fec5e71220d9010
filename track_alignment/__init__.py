# http://stackoverflow.com/questions/17583443/what-is-the-correct-way-to-share-package-version-with-setup-py-and-the-package
from importlib.metadata import version, PackageNotFoundError

__version__ = None  # required for initial installation

try:
    __version__ = version("track_alignment")
except PackageNotFoundError:
    __version__ = "(local)"
