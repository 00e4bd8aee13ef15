#!/usr/bin/env python3
"""
earth_tiles.py - Download photorealistic 3D tiles around a point and realign them

Walks a remote 3D Tiles tileset, keeps the leaf .glb tiles whose bounding
volumes touch a sphere around the requested location, and rewrites each tile
so that its local "up" points along +Y and its translation is expressed
relative to one origin shared by every tile of the run.

Usage:
    python earth_tiles.py --key $GOOGLE_MAPS_API_KEY --lat 51.5007 --lng -0.1246 \
        --radius 200 --out tiles/ --parallel 10

Output (stdout, one line each):
    ORIGIN_TRANSLATION [x,y,z]
    ASSET_COPYRIGHT <file> <copyright>
    TILE_TRANSLATION <file> [x,y,z]
    DOWNLOADED_TILES: ["<file>", ...]

Dependencies:
    pip install numpy pygltflib pyproj requests trimesh
"""

# Standard library
import argparse
import copy
import hashlib
import json
import logging
import math
import os
import sys
import tempfile
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, NamedTuple, Optional
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

# Third party
import numpy as np
import requests
from pygltflib import GLTF2
from pyproj import Transformer
from requests.adapters import HTTPAdapter
from trimesh import transformations


# =============================================================================
# Constants
# =============================================================================

# Google Maps Platform endpoints
ROOT_TILESET_URL = "https://tile.googleapis.com/v1/3dtiles/root.json"
ELEVATION_API_URL = "https://maps.googleapis.com/maps/api/elevation/json"

# API Configuration
API_TIMEOUT_SECONDS = 30
MAX_ELEVATION_RETRIES = 3
DEFAULT_PARALLEL = 10
TILESET_FETCH_CONCURRENCY = 10

# Query parameters that differ between sessions for the same tile
KEY_PARAM = "key"
SESSION_PARAM = "session"
VOLATILE_PARAMS = frozenset({KEY_PARAM, SESSION_PARAM})

# Frame alignment
CANONICAL_UP = np.array([0.0, 1.0, 0.0])
ALIGNED_EPSILON = 1e-6

# glTF
IDENTITY_ROTATION = (0.0, 0.0, 0.0, 1.0)
ORIGINAL_POSITION_EXTRA = "originalTranslation"
DRACO_EXTENSION = "KHR_draco_mesh_compression"
COMPONENT_TYPE_FLOAT32 = 5126

logger = logging.getLogger(__name__)


# =============================================================================
# Custom Exceptions
# =============================================================================

class TileError(Exception):
    """Base exception for tile download errors."""
    pass


class TransportError(TileError):
    """Error reaching a tileset, asset or elevation URL."""

    def __init__(self, url: str, message: str = "", status_code: Optional[int] = None):
        self.url = url
        self.status_code = status_code
        status = f"HTTP {status_code}" if status_code is not None else "no response"
        super().__init__(f"Request for {tile_identity(url)} failed ({status}): {message}")


class ParseError(TileError):
    """Malformed tileset document."""
    pass


class AssetIOError(TileError):
    """Unreadable or unwritable tile asset."""
    pass


class ConfigError(TileError):
    """Invalid run configuration."""
    pass


# =============================================================================
# Data Classes
# =============================================================================

class BoundingSphere(NamedTuple):
    """Sphere in ECEF coordinates, used both for the region and for culling."""
    center: np.ndarray
    radius: float

    def intersects(self, other: "BoundingSphere") -> bool:
        return spheres_intersect(self, other)


class NodeTransform(NamedTuple):
    """Translation and scale of a glTF node; rotation is always discarded."""
    translation: np.ndarray
    scale: np.ndarray


class Alignment(NamedTuple):
    """Rotation taking a tile's radial up to +Y, plus its offset from the origin."""
    rotation: np.ndarray
    relative_translation: np.ndarray

    @property
    def translation(self) -> np.ndarray:
        return self.rotation @ self.relative_translation


@dataclass(frozen=True)
class TileAsset:
    """One leaf tile: its glTF document and where it sat before any rotation."""
    gltf: GLTF2
    original_position: np.ndarray
    node_index: int

    @property
    def copyright(self) -> str:
        asset = self.gltf.asset
        return (asset.copyright if asset is not None else None) or ""


class TileResult(NamedTuple):
    """Result from processing a single tile."""
    filename: str
    translation: np.ndarray
    copyright: str
    downloaded: bool


@dataclass(frozen=True)
class RunConfig:
    """Validated settings for one download run."""
    api_key: str
    lat: float
    lng: float
    radius: float
    output_dir: str
    parallel: int = DEFAULT_PARALLEL
    origin: Optional[np.ndarray] = None
    root_url: str = ROOT_TILESET_URL
    use_elevation: bool = True
    timeout: float = API_TIMEOUT_SECONDS


# =============================================================================
# Utility Functions
# =============================================================================

def _calculate_backoff_delay(attempt: int) -> float:
    """Calculate exponential backoff delay with jitter.

    Args:
        attempt: The current attempt number (0-indexed)

    Returns:
        Delay in seconds to wait before next retry
    """
    return (2 ** attempt) + np.random.random()


def _as_position(values, name: str = "position") -> np.ndarray:
    """Convert a 3-sequence into a read-only float64 vector.

    Raises:
        ValueError: If the value is not three finite numbers
    """
    if isinstance(values, (str, bytes)):
        raise ValueError(f"{name} must be three numbers")
    try:
        vector = np.array([float(v) for v in values], dtype=np.float64)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be three numbers") from exc
    if vector.shape != (3,):
        raise ValueError(f"{name} must have exactly three components, got {vector.size}")
    if not np.all(np.isfinite(vector)):
        raise ValueError(f"{name} must be finite")
    vector.flags.writeable = False
    return vector


def format_vector(vector) -> str:
    """Compact JSON array used by the output contract, e.g. ``[1.5,0.0,-2.0]``."""
    # Adding 0.0 turns -0.0 into 0.0
    return json.dumps([float(v) + 0.0 for v in vector], separators=(",", ":"))


_output_lock = threading.Lock()


def emit(line: str) -> None:
    """Write one contract line to stdout without interleaving between threads."""
    with _output_lock:
        sys.stdout.write(line + "\n")
        sys.stdout.flush()


# =============================================================================
# Coordinate Functions
# =============================================================================

def geodetic_to_ecef(lon: float, lat: float, height: float = 0.0) -> np.ndarray:
    """Convert WGS84 longitude/latitude/height to Earth-centred cartesian.

    Args:
        lon: Longitude in decimal degrees
        lat: Latitude in decimal degrees
        height: Ellipsoidal height in meters

    Returns:
        Array of (x, y, z) in meters
    """
    transformer = Transformer.from_crs("EPSG:4979", "EPSG:4978", always_xy=True)
    x, y, z = transformer.transform(lon, lat, height)
    return np.array([x, y, z], dtype=np.float64)


def region_sphere(lat: float, lng: float, height: float, radius: float) -> BoundingSphere:
    """Query region: a sphere of ``radius`` meters around a geographic point."""
    return BoundingSphere(center=geodetic_to_ecef(lng, lat, height), radius=float(radius))


# =============================================================================
# Spatial Culling
# =============================================================================

# Sign of each half axis for the 8 corners; bit i of the corner index picks axis i
_CORNER_SIGNS = np.array(
    [[1.0 if i & bit else -1.0 for bit in (1, 2, 4)] for i in range(8)]
)


def box_corners(box) -> np.ndarray:
    """Corners of a 3D Tiles ``boundingVolume.box``.

    Args:
        box: 12 numbers, center xyz followed by three half-axis vectors

    Returns:
        Array of shape (8, 3)

    Raises:
        ParseError: If the box is not 12 finite numbers
    """
    try:
        values = np.asarray(box, dtype=np.float64)
    except (TypeError, ValueError) as exc:
        raise ParseError(f"boundingVolume.box is not numeric: {box!r}") from exc
    if values.shape != (12,):
        raise ParseError(f"boundingVolume.box must have 12 numbers, got shape {values.shape}")
    if not np.all(np.isfinite(values)):
        raise ParseError("boundingVolume.box must be finite")
    center = values[0:3]
    half_axes = values[3:12].reshape(3, 3)
    return center + _CORNER_SIGNS @ half_axes


def box_to_sphere(box) -> BoundingSphere:
    """Loose sphere around an oriented box.

    Takes the axis-aligned range of the box corners and returns the sphere
    through the corners of that range. This is never smaller than the box, so
    it can only make culling keep more tiles, never fewer.
    """
    corners = box_corners(box)
    low = corners.min(axis=0)
    high = corners.max(axis=0)
    return BoundingSphere(center=(low + high) / 2.0, radius=float(np.linalg.norm(high - low) / 2.0))


def spheres_intersect(a: BoundingSphere, b: BoundingSphere) -> bool:
    """True when the centers are strictly closer than the sum of the radii."""
    distance = float(np.linalg.norm(np.asarray(a.center) - np.asarray(b.center)))
    return distance < a.radius + b.radius


def node_intersects(node: dict, region: BoundingSphere) -> bool:
    """Whether a tileset node may overlap the region.

    Nodes without a usable box cannot be excluded, so they are kept.
    """
    volume = node.get("boundingVolume") or {}
    box = volume.get("box") if isinstance(volume, dict) else None
    if box is None:
        return True
    try:
        sphere = box_to_sphere(box)
    except ParseError as exc:
        logger.warning("Keeping node with unusable bounding volume: %s", exc)
        return True
    return sphere.intersects(region)


# =============================================================================
# URL Handling
# =============================================================================

class SessionToken:
    """Latest session value seen during one traversal run."""

    def __init__(self, value: Optional[str] = None):
        self._value = value
        self._lock = threading.Lock()

    @property
    def value(self) -> Optional[str]:
        with self._lock:
            return self._value

    def observe(self, value: Optional[str]) -> None:
        if value:
            with self._lock:
                self._value = value


def tile_identity(url: str) -> str:
    """Cache key for a tile URL: path plus query, minus key and session."""
    parts = urlsplit(url)
    query = [
        (name, value)
        for name, value in parse_qsl(parts.query, keep_blank_values=True)
        if name not in VOLATILE_PARAMS
    ]
    if query:
        return f"{parts.path}?{urlencode(query)}"
    return parts.path


def authorize_url(url: str, api_key: Optional[str], session: SessionToken) -> str:
    """Add the credential and current session to a URL where they are missing."""
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    present = {name for name, _ in query}
    if api_key and KEY_PARAM not in present:
        query.append((KEY_PARAM, api_key))
    current = session.value
    if current and SESSION_PARAM not in present:
        query.append((SESSION_PARAM, current))
    return urlunsplit(parts._replace(query=urlencode(query)))


def resolve_content_url(base_url: str, uri: str, api_key: Optional[str], session: SessionToken) -> str:
    """Resolve a ``content.uri`` against its tileset and authorize it.

    A session value carried by the URI becomes the run's current session.
    """
    resolved = urljoin(base_url, uri)
    for name, value in parse_qsl(urlsplit(resolved).query, keep_blank_values=True):
        if name == SESSION_PARAM:
            session.observe(value)
    return authorize_url(resolved, api_key, session)


def is_mesh_url(url: str) -> bool:
    return urlsplit(url).path.lower().endswith(".glb")


# =============================================================================
# HTTP
# =============================================================================

class TileClient:
    """Thin wrapper over a pooled ``requests.Session``."""

    def __init__(self, timeout: float = API_TIMEOUT_SECONDS, pool_size: int = DEFAULT_PARALLEL,
                 session: Optional[requests.Session] = None):
        self.timeout = timeout
        if session is None:
            session = requests.Session()
            adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size)
            session.mount("https://", adapter)
            session.mount("http://", adapter)
        self.session = session

    def get(self, url: str) -> requests.Response:
        """GET a URL, requiring a 200 response.

        Raises:
            TransportError: On connection failure or any other status
        """
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.exceptions.RequestException as exc:
            raise TransportError(url, type(exc).__name__) from exc
        if response.status_code != 200:
            raise TransportError(url, "unexpected status", response.status_code)
        return response

    def get_bytes(self, url: str) -> bytes:
        return self.get(url).content


def is_json_response(response: requests.Response) -> bool:
    return "json" in response.headers.get("Content-Type", "").lower()


def parse_tileset(response: requests.Response, url: str) -> dict:
    """Root node of a fetched tileset document.

    Raises:
        ParseError: If the body is not a JSON object with a ``root`` object
    """
    try:
        document = response.json()
    except ValueError as exc:
        raise ParseError(f"Tileset {tile_identity(url)} is not valid JSON") from exc
    if not isinstance(document, dict) or not isinstance(document.get("root"), dict):
        raise ParseError(f"No root in tileset {tile_identity(url)}")
    return document["root"]


def fetch_ground_elevation(client: TileClient, api_key: str, lat: float, lng: float) -> float:
    """Ground elevation at a point from the Google Elevation API.

    Args:
        client: HTTP client
        api_key: Google Maps API key
        lat: Latitude in decimal degrees
        lng: Longitude in decimal degrees

    Returns:
        Elevation in meters

    Raises:
        TransportError: If the API cannot be reached or reports an error
    """
    url = f"{ELEVATION_API_URL}?{urlencode({'locations': f'{lat},{lng}', KEY_PARAM: api_key})}"

    # Retry with exponential backoff when rate limited
    response = None
    for attempt in range(MAX_ELEVATION_RETRIES):
        try:
            response = client.get(url)
            break
        except TransportError as exc:
            if exc.status_code != 429 or attempt == MAX_ELEVATION_RETRIES - 1:
                raise
            time.sleep(_calculate_backoff_delay(attempt))

    try:
        data = response.json()
        if data.get("status") != "OK":
            raise TransportError(url, f"elevation API status {data.get('status')}")
        return float(data["results"][0]["elevation"])
    except (ValueError, KeyError, IndexError, TypeError, AttributeError) as exc:
        raise TransportError(url, "malformed elevation response") from exc


def lookup_elevation(client: TileClient, config: RunConfig) -> float:
    """Elevation for the region center, or 0 when it cannot be determined."""
    if not config.use_elevation:
        return 0.0
    try:
        elevation = fetch_ground_elevation(client, config.api_key, config.lat, config.lng)
    except TransportError as exc:
        logger.warning("Elevation fetch failed => using 0. Error: %s", exc)
        return 0.0
    logger.info("Found ground elevation ~%.2f m", elevation)
    return elevation


# =============================================================================
# Tileset Traversal
# =============================================================================

class TileTreeWalker:
    """Collects leaf mesh URLs of a tileset that overlap a region.

    Child nodes are visited in the calling thread; nested tileset documents
    are fetched on a bounded thread pool, so the number of requests in flight
    stays capped however wide the tree is.
    """

    def __init__(self, client: TileClient, region: BoundingSphere, api_key: Optional[str],
                 concurrency: int = TILESET_FETCH_CONCURRENCY):
        self.client = client
        self.region = region
        self.api_key = api_key
        self.concurrency = concurrency
        self.session = SessionToken()
        self._leaves: list[str] = []
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._pending = 0
        self._executor: Optional[ThreadPoolExecutor] = None

    def collect(self, root_url: str) -> list[str]:
        """Fetch the root tileset and gather every intersecting leaf URL.

        Raises:
            TransportError: If the root tileset cannot be fetched
            ParseError: If the root tileset is malformed
        """
        url = authorize_url(root_url, self.api_key, self.session)
        root = parse_tileset(self.client.get(url), url)

        with ThreadPoolExecutor(max_workers=self.concurrency) as executor:
            self._executor = executor
            try:
                self.walk(root, url)
            finally:
                with self._idle:
                    while self._pending:
                        self._idle.wait()
        self._executor = None

        with self._lock:
            return list(self._leaves)

    def walk(self, node: dict, base_url: str) -> None:
        """Descend one node; children shadow the node's own content."""
        if not isinstance(node, dict):
            raise ParseError(f"Tileset node is not an object: {type(node).__name__}")
        if not node_intersects(node, self.region):
            return

        children = node.get("children") or []
        if children:
            for child in children:
                self.walk(child, base_url)
            return

        content = node.get("content")
        if not isinstance(content, dict):
            return
        uri = content.get("uri") or content.get("url")
        if not uri:
            return
        if not isinstance(uri, str):
            raise ParseError(f"content.uri must be a string, got {type(uri).__name__}")
        url = resolve_content_url(base_url, uri, self.api_key, self.session)
        if is_mesh_url(url):
            self._add_leaf(url)
        else:
            self._submit(url)

    def _add_leaf(self, url: str) -> None:
        with self._lock:
            self._leaves.append(url)

    def _submit(self, url: str) -> None:
        with self._lock:
            self._pending += 1
        future = self._executor.submit(self._fetch_nested, url)
        future.add_done_callback(self._task_done)

    def _task_done(self, future: Future) -> None:
        error = future.exception()
        if error is not None:
            logger.error("Nested tileset task failed: %r", error)
        with self._idle:
            self._pending -= 1
            self._idle.notify_all()

    def _fetch_nested(self, url: str) -> None:
        url = authorize_url(url, self.api_key, self.session)
        try:
            response = self.client.get(url)
            if not is_json_response(response):
                # Not a tileset after all; keep it as a mesh asset
                self._add_leaf(url)
                return
            self.walk(parse_tileset(response, url), url)
        except (TransportError, ParseError) as exc:
            logger.warning("Skipping nested tileset: %s", exc)


# =============================================================================
# Shared Origin
# =============================================================================

class SharedOrigin:
    """Write-once origin shared by every worker of a run.

    The first call to :meth:`set_if_unset` fixes the value; later calls get
    the stored value back unchanged.
    """

    def __init__(self, on_set: Optional[Callable[[np.ndarray], None]] = None):
        self._lock = threading.Lock()
        self._value: Optional[np.ndarray] = None
        self._on_set = on_set

    def is_set(self) -> bool:
        with self._lock:
            return self._value is not None

    def get(self) -> np.ndarray:
        with self._lock:
            if self._value is None:
                raise RuntimeError("Origin has not been established")
            return self._value

    def set_if_unset(self, value) -> np.ndarray:
        with self._lock:
            if self._value is None:
                self._value = _as_position(value, "origin")
                if self._on_set is not None:
                    self._on_set(self._value)
            return self._value


def announce_origin(origin: np.ndarray) -> None:
    emit(f"ORIGIN_TRANSLATION {format_vector(origin)}")


# =============================================================================
# Frame Alignment
# =============================================================================

def rotation_to_up(position) -> np.ndarray:
    """Shortest-arc rotation taking the direction of ``position`` to +Y.

    Args:
        position: ECEF position; its direction is the local radial up

    Returns:
        3x3 rotation matrix (identity for a zero vector)
    """
    position = np.asarray(position, dtype=np.float64)
    length = np.linalg.norm(position)
    if length == 0:
        return np.identity(3)
    up = position / length

    cosine = float(np.dot(up, CANONICAL_UP))
    if cosine > 1.0 - ALIGNED_EPSILON:
        return np.identity(3)
    if cosine < -1.0 + ALIGNED_EPSILON:
        # Opposite directions: any perpendicular axis works
        axis = np.cross([1.0, 0.0, 0.0], up)
        if np.linalg.norm(axis) < ALIGNED_EPSILON:
            axis = np.cross([0.0, 0.0, 1.0], up)
        angle = math.pi
    else:
        axis = np.cross(up, CANONICAL_UP)
        angle = math.atan2(float(np.linalg.norm(axis)), cosine)
    return transformations.rotation_matrix(angle, axis)[:3, :3]


def align(original_position, origin) -> Alignment:
    """Rotation and origin-relative offset for a tile at ``original_position``."""
    original = np.asarray(original_position, dtype=np.float64)
    return Alignment(
        rotation=rotation_to_up(original),
        relative_translation=original - np.asarray(origin, dtype=np.float64),
    )


def read_node_transform(node) -> NodeTransform:
    """Translation and scale of a node, decomposing ``matrix`` when present.

    Raises:
        AssetIOError: If the node matrix cannot be decomposed
    """
    if node.matrix is not None:
        try:
            # glTF stores matrices column-major
            matrix = np.asarray(node.matrix, dtype=np.float64).reshape(4, 4).T
            scale, _, _, translate, _ = transformations.decompose_matrix(matrix)
        except ValueError as exc:
            raise AssetIOError(f"Node matrix cannot be decomposed: {exc}") from exc
        return NodeTransform(np.asarray(translate, dtype=np.float64), np.asarray(scale, dtype=np.float64))

    translation = node.translation if node.translation is not None else (0.0, 0.0, 0.0)
    scale = node.scale if node.scale is not None else (1.0, 1.0, 1.0)
    return NodeTransform(np.asarray(translation, dtype=np.float64), np.asarray(scale, dtype=np.float64))


def representative_node(gltf: GLTF2) -> int:
    """Index of the node whose transform stands for the whole tile.

    Only one node per tile is realigned: the first one carrying a translation
    or matrix, otherwise the first node.

    Raises:
        AssetIOError: If the document has no nodes
    """
    nodes = gltf.nodes or []
    if not nodes:
        raise AssetIOError("Tile has no nodes")
    placed = [
        index for index, node in enumerate(nodes)
        if node.translation is not None or node.matrix is not None
    ]
    if len(placed) > 1:
        logger.warning(
            "Tile has %d positioned nodes; only node %d is realigned", len(placed), placed[0]
        )
    return placed[0] if placed else 0


def _indexed(items, index, what: str):
    """``items[index]`` for a glTF cross-reference, or AssetIOError if it dangles."""
    if not isinstance(index, int) or isinstance(index, bool) or index < 0:
        raise AssetIOError(f"Invalid {what} index {index!r}")
    try:
        return (items or [])[index]
    except IndexError as exc:
        raise AssetIOError(f"{what} index {index} does not exist") from exc


def _position_accessors(gltf: GLTF2, node) -> list[int]:
    """POSITION accessor indices of a node's mesh, each listed once.

    Raises:
        AssetIOError: If the mesh is missing or Draco-compressed
    """
    if node.mesh is None:
        return []
    indices = []
    for primitive in _indexed(gltf.meshes, node.mesh, "mesh").primitives or []:
        if primitive.extensions and DRACO_EXTENSION in primitive.extensions:
            raise AssetIOError("Draco-compressed primitives are not supported")
        index = primitive.attributes.POSITION
        if index is not None and index not in indices:
            indices.append(index)
    return indices


def _position_view(gltf: GLTF2, blob, accessor_index: int) -> Optional[np.ndarray]:
    """(count, 3) float32 view of a POSITION accessor inside ``blob``.

    The view is writable when ``blob`` is a bytearray.
    """
    accessor = _indexed(gltf.accessors, accessor_index, "accessor")
    if accessor.sparse is not None:
        raise AssetIOError("Sparse POSITION accessors are not supported")
    if accessor.bufferView is None:
        return None
    if accessor.componentType != COMPONENT_TYPE_FLOAT32 or accessor.type != "VEC3":
        raise AssetIOError(
            f"POSITION accessor {accessor_index} is not float VEC3 "
            f"({accessor.componentType}, {accessor.type})"
        )
    view = _indexed(gltf.bufferViews, accessor.bufferView, "bufferView")
    if view.buffer != 0:
        raise AssetIOError("POSITION data outside the GLB binary chunk is not supported")
    offset = (view.byteOffset or 0) + (accessor.byteOffset or 0)
    stride = view.byteStride or 12
    try:
        return np.ndarray(
            shape=(accessor.count, 3), dtype="<f4", buffer=blob, offset=offset, strides=(stride, 4)
        )
    except (TypeError, ValueError) as exc:
        raise AssetIOError(f"POSITION accessor {accessor_index} overruns the buffer") from exc


def apply_alignment(asset: TileAsset, alignment: Alignment) -> TileAsset:
    """Bake an alignment into a copy of the tile.

    The representative node gets the rotated, origin-relative translation and
    an identity rotation; every vertex of its mesh is rotated (not
    translated). The input asset is left untouched.

    Raises:
        AssetIOError: If the mesh data cannot be rewritten in place
    """
    gltf = copy.deepcopy(asset.gltf)
    blob = bytearray(asset.gltf.binary_blob() or b"")
    node = _indexed(gltf.nodes, asset.node_index, "node")
    transform = read_node_transform(node)

    for index in _position_accessors(gltf, node):
        positions = _position_view(gltf, blob, index)
        if positions is None or len(positions) == 0:
            continue
        positions[:] = (positions.astype(np.float64) @ alignment.rotation.T).astype(np.float32)
        accessor = gltf.accessors[index]
        accessor.min = positions.min(axis=0).astype(float).tolist()
        accessor.max = positions.max(axis=0).astype(float).tolist()

    node.matrix = None
    node.rotation = list(IDENTITY_ROTATION)
    node.translation = alignment.translation.astype(float).tolist()
    node.scale = None if np.allclose(transform.scale, 1.0) else transform.scale.astype(float).tolist()

    gltf.set_binary_blob(bytes(blob))
    extras = dict(gltf.extras) if isinstance(gltf.extras, dict) else {}
    extras[ORIGINAL_POSITION_EXTRA] = asset.original_position.astype(float).tolist()
    gltf.extras = extras
    return TileAsset(gltf=gltf, original_position=asset.original_position, node_index=asset.node_index)


# =============================================================================
# Asset Cache
# =============================================================================

def decode_glb(data: bytes, source: str) -> GLTF2:
    """Parse GLB bytes.

    Raises:
        AssetIOError: If the bytes are not a readable GLB
    """
    try:
        gltf = GLTF2().load_from_bytes(data)
    except Exception as exc:  # pygltflib raises a mix of error types
        raise AssetIOError(f"Could not decode GLB from {source}: {exc}") from exc
    if gltf is None:
        raise AssetIOError(f"Could not decode GLB from {source}")
    return gltf


def new_tile_asset(gltf: GLTF2) -> TileAsset:
    """Wrap a freshly downloaded tile, capturing its absolute position.

    The representative node's vertex data is checked up front, so a tile that
    cannot be realigned never adopts the shared origin.

    Raises:
        AssetIOError: If the node's mesh or vertex data is unusable
    """
    node_index = representative_node(gltf)
    node = gltf.nodes[node_index]
    blob = gltf.binary_blob() or b""
    for index in _position_accessors(gltf, node):
        _position_view(gltf, blob, index)
    translation = read_node_transform(node).translation
    try:
        original = _as_position(translation, "node translation")
    except ValueError as exc:
        raise AssetIOError(str(exc)) from exc
    return TileAsset(gltf=gltf, original_position=original, node_index=node_index)


class AssetCache:
    """Tiles stored as ``<sha1 of identity>.glb`` in one output directory."""

    def __init__(self, output_dir: str):
        self.output_dir = output_dir

    @staticmethod
    def identity(url: str) -> str:
        return tile_identity(url)

    @staticmethod
    def filename(identity: str) -> str:
        return f"{hashlib.sha1(identity.encode('utf-8')).hexdigest()}.glb"

    def path(self, identity: str) -> str:
        return os.path.join(self.output_dir, self.filename(identity))

    def exists(self, identity: str) -> bool:
        return os.path.isfile(self.path(identity))

    def load(self, identity: str) -> TileAsset:
        """Read a stored tile and recover its original position.

        Raises:
            AssetIOError: If the file cannot be read or decoded
        """
        path = self.path(identity)
        try:
            with open(path, "rb") as handle:
                data = handle.read()
        except OSError as exc:
            raise AssetIOError(f"Could not read existing GLB {path}: {exc}") from exc
        gltf = decode_glb(data, path)
        node_index = representative_node(gltf)
        return TileAsset(
            gltf=gltf,
            original_position=self.recover_original_position(gltf, node_index),
            node_index=node_index,
        )

    def recover_original_position(self, gltf: GLTF2, node_index: int) -> np.ndarray:
        """Position stored in the tile's extras, else its node translation.

        The node translation of a stored tile has already been rotated, so the
        fallback is only an approximation for files written by other tools.
        """
        extras = gltf.extras if isinstance(gltf.extras, dict) else {}
        stored = extras.get(ORIGINAL_POSITION_EXTRA)
        if stored is not None:
            try:
                position = _as_position(stored, ORIGINAL_POSITION_EXTRA)
                logger.info("Recovered original translation: %s", format_vector(position))
                return position
            except ValueError as exc:
                logger.warning("Ignoring stored original translation: %s", exc)
        else:
            logger.warning("Local GLB has no extras.%s. Fallback to node translation.", ORIGINAL_POSITION_EXTRA)

        translation = read_node_transform(gltf.nodes[node_index]).translation
        try:
            return _as_position(translation, "node translation")
        except ValueError as exc:
            raise AssetIOError(str(exc)) from exc

    def store(self, identity: str, asset: TileAsset) -> str:
        """Write a tile atomically, keeping its original position in extras.

        Returns:
            Path of the written file

        Raises:
            AssetIOError: If the file cannot be written
        """
        path = self.path(identity)
        extras = dict(asset.gltf.extras) if isinstance(asset.gltf.extras, dict) else {}
        extras[ORIGINAL_POSITION_EXTRA] = asset.original_position.astype(float).tolist()
        asset.gltf.extras = extras

        temp_path = None
        try:
            data = b"".join(asset.gltf.save_to_bytes())
            os.makedirs(self.output_dir, exist_ok=True)
            handle, temp_path = tempfile.mkstemp(suffix=".part", dir=self.output_dir)
            with os.fdopen(handle, "wb") as out:
                out.write(data)
            os.replace(temp_path, path)
            temp_path = None
        except Exception as exc:  # pygltflib serialisation or filesystem
            raise AssetIOError(f"Could not write {path}: {exc}") from exc
        finally:
            if temp_path is not None and os.path.exists(temp_path):
                os.remove(temp_path)
        return path


# =============================================================================
# Download Pipeline
# =============================================================================

class DownloadPipeline:
    """Fetch, align and store every leaf tile.

    Without a preset origin, leaves are processed one at a time until one of
    them establishes the origin; the rest then run on a thread pool.
    """

    def __init__(self, client: TileClient, cache: AssetCache, origin: SharedOrigin,
                 parallel: int = DEFAULT_PARALLEL):
        self.client = client
        self.cache = cache
        self.origin = origin
        self.parallel = parallel

    def run(self, urls: list[str]) -> list[TileResult]:
        pending = self._unique(urls)
        results = []

        while pending and not self.origin.is_set():
            result = self._process_safely(pending.pop(0))
            if result is not None:
                results.append(result)

        if pending:
            with ThreadPoolExecutor(max_workers=self.parallel) as executor:
                futures = {executor.submit(self._process_safely, url): url for url in pending}
                for future in as_completed(futures):
                    result = future.result()
                    if result is not None:
                        results.append(result)

        return results

    def _unique(self, urls: list[str]) -> list[str]:
        seen = set()
        unique = []
        for url in urls:
            identity = self.cache.identity(url)
            if identity not in seen:
                seen.add(identity)
                unique.append(url)
        return unique

    def _process_safely(self, url: str) -> Optional[TileResult]:
        try:
            return self.process(url)
        except TileError as exc:
            logger.warning("Skipping tile %s: %s", tile_identity(url), exc)
            return None

    def process(self, url: str) -> TileResult:
        """Fetch (or load), align and store one tile, then report it.

        Raises:
            TransportError: If the tile cannot be downloaded
            AssetIOError: If the tile cannot be decoded, read or written
        """
        identity = self.cache.identity(url)
        filename = self.cache.filename(identity)

        downloaded = not self.cache.exists(identity)
        if downloaded:
            asset = new_tile_asset(decode_glb(self.client.get_bytes(url), identity))
        else:
            logger.info("%s already exists. Using local file for transform.", filename)
            asset = self.cache.load(identity)

        origin = self.origin.set_if_unset(asset.original_position)
        alignment = align(asset.original_position, origin)

        if downloaded:
            self.cache.store(identity, apply_alignment(asset, alignment))
            logger.info("Wrote new tile => %s", filename)

        translation = alignment.translation
        # One contract line per tile
        notice = asset.copyright.replace("\r", " ").replace("\n", " ")
        emit(f"ASSET_COPYRIGHT {filename} {notice}")
        emit(f"TILE_TRANSLATION {filename} {format_vector(translation)}")
        return TileResult(filename=filename, translation=translation,
                          copyright=asset.copyright, downloaded=downloaded)


# =============================================================================
# Main Function Components
# =============================================================================

def parse_arguments(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command line arguments.

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(description='Download and realign photorealistic 3D tiles')
    parser.add_argument('--key', type=str, default=os.environ.get('GOOGLE_MAPS_API_KEY'),
                        help='Google Maps API key (default: $GOOGLE_MAPS_API_KEY)')
    parser.add_argument('--lat', type=float, required=True, help='Centre latitude')
    parser.add_argument('--lng', type=float, required=True, help='Centre longitude')
    parser.add_argument('--radius', type=float, required=True, help='Region radius in meters')
    parser.add_argument('--out', type=str, required=True, help='Output folder')
    parser.add_argument('--parallel', type=int, default=DEFAULT_PARALLEL, help='Parallel tile downloads')
    parser.add_argument(
        '--origin', nargs='+', default=None, metavar='N',
        help='Shared origin as three numbers: x y z (default: first tile position)'
    )
    parser.add_argument('--root-url', type=str, default=ROOT_TILESET_URL, help='Root tileset URL')
    parser.add_argument('--no-elevation', action='store_true', help='Skip the ground elevation lookup')
    parser.add_argument('--timeout', type=float, default=API_TIMEOUT_SECONDS, help='HTTP timeout in seconds')
    return parser.parse_args(argv)


def parse_origin(values: Optional[list[str]]) -> Optional[np.ndarray]:
    """Validate a user-supplied origin.

    Raises:
        ConfigError: If there are not exactly three finite numbers
    """
    if values is None:
        return None
    if len(values) != 3:
        raise ConfigError("--origin requires exactly three numeric values: x y z")
    try:
        return _as_position(values, "origin")
    except ValueError as exc:
        raise ConfigError(f"--origin values must be valid numbers ({exc})") from exc


def build_config(args: argparse.Namespace) -> RunConfig:
    """Turn parsed arguments into a validated run configuration.

    Raises:
        ConfigError: If any setting is invalid
    """
    if not args.key:
        raise ConfigError("An API key is required (--key or GOOGLE_MAPS_API_KEY)")
    if args.radius < 0:
        raise ConfigError("--radius must not be negative")
    if args.parallel < 1:
        raise ConfigError("--parallel must be at least 1")
    return RunConfig(
        api_key=args.key,
        lat=args.lat,
        lng=args.lng,
        radius=args.radius,
        output_dir=args.out,
        parallel=args.parallel,
        origin=parse_origin(args.origin),
        root_url=args.root_url,
        use_elevation=not args.no_elevation,
        timeout=args.timeout,
    )


def download_tiles(config: RunConfig, client: Optional[TileClient] = None) -> list[TileResult]:
    """Run the whole download for one configuration.

    Args:
        config: Validated run configuration
        client: HTTP client (a pooled one is created when omitted)

    Returns:
        One result per tile that was written or reused

    Raises:
        TransportError: If the root tileset cannot be fetched
        ParseError: If the root tileset is malformed
        AssetIOError: If the output folder cannot be created
    """
    if client is None:
        client = TileClient(timeout=config.timeout, pool_size=max(config.parallel, TILESET_FETCH_CONCURRENCY))
    try:
        os.makedirs(config.output_dir, exist_ok=True)
    except OSError as exc:
        raise AssetIOError(f"Could not create {config.output_dir}: {exc}") from exc

    origin = SharedOrigin(on_set=announce_origin)
    if config.origin is not None:
        logger.info("Using user-provided origin: %s", format_vector(config.origin))
        origin.set_if_unset(config.origin)

    elevation = lookup_elevation(client, config)
    region = region_sphere(config.lat, config.lng, elevation, config.radius)

    logger.info("Gathering sub-tiles in bounding volume...")
    walker = TileTreeWalker(client, region, config.api_key)
    leaves = walker.collect(config.root_url)
    logger.info("Found %d .glb tile(s).", len(leaves))

    pipeline = DownloadPipeline(client, AssetCache(config.output_dir), origin, config.parallel)
    return pipeline.run(leaves)


# =============================================================================
# Main Entry Point
# =============================================================================

def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point for the tile downloader."""
    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")
    args = parse_arguments(argv)

    try:
        config = build_config(args)
    except ConfigError as exc:
        logger.error("%s", exc)
        return 2

    try:
        results = download_tiles(config)
    except TileError as exc:
        logger.error("Could not gather 3D tiles: %s", exc)
        return 1

    filenames = [result.filename for result in results]
    emit(f"DOWNLOADED_TILES: {json.dumps(filenames, separators=(',', ':'))}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
