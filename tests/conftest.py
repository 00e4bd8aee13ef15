import json
from urllib.parse import urlsplit

import numpy as np
import pytest
from pygltflib import (
    ARRAY_BUFFER,
    FLOAT,
    GLTF2,
    VEC3,
    Accessor,
    Asset,
    Attributes,
    Buffer,
    BufferView,
    Mesh,
    Node,
    Primitive,
    Scene,
)


ROOT_URL = "https://tiles.test/v1/3dtiles/root.json"
API_KEY = "test-key"

# Unit cube-ish vertex set, enough to see a rotation
VERTICES = [
    [1.0, 0.0, 0.0],
    [0.0, 1.0, 0.0],
    [0.0, 0.0, 1.0],
    [1.0, 2.0, 3.0],
]


class FakeResponse:
    def __init__(self, status_code=200, body=b"", content_type="application/octet-stream"):
        self.status_code = status_code
        self.content = body
        self.headers = {"Content-Type": content_type}

    def json(self):
        return json.loads(self.content.decode("utf-8"))


class FakeSession:
    """Stands in for ``requests.Session``; routes on URL path only."""

    def __init__(self):
        self.routes = {}
        self.requests = []

    def add_json(self, path, document):
        self.routes[path] = FakeResponse(200, json.dumps(document).encode("utf-8"), "application/json")

    def add_glb(self, path, data):
        self.routes[path] = FakeResponse(200, data, "model/gltf-binary")

    def add(self, path, response):
        self.routes[path] = response

    def get(self, url, timeout=None):
        self.requests.append(url)
        route = self.routes.get(urlsplit(url).path)
        if isinstance(route, list):
            route = route.pop(0) if route else None
        return route if route is not None else FakeResponse(404)

    def requested(self, path):
        return [url for url in self.requests if urlsplit(url).path == path]


def build_glb(translation=None, vertices=VERTICES, rotation=None, copyright="Data SIO", extras=None,
              matrix=None, extra_nodes=()):
    """GLB bytes for a one-primitive tile.

    Node 0 holds the mesh; ``extra_nodes`` adds mesh-less nodes at the given
    translations.
    """
    positions = np.asarray(vertices, dtype=np.float32)
    blob = positions.tobytes()
    node = Node(mesh=0)
    if translation is not None:
        node.translation = [float(v) for v in translation]
    if rotation is not None:
        node.rotation = [float(v) for v in rotation]
    if matrix is not None:
        node.matrix = [float(v) for v in matrix]
    nodes = [node] + [Node(translation=[float(v) for v in t]) for t in extra_nodes]
    gltf = GLTF2(
        asset=Asset(version="2.0", copyright=copyright),
        scene=0,
        scenes=[Scene(nodes=list(range(len(nodes))))],
        nodes=nodes,
        meshes=[Mesh(primitives=[Primitive(attributes=Attributes(POSITION=0))])],
        accessors=[
            Accessor(
                bufferView=0,
                componentType=FLOAT,
                count=len(positions),
                type=VEC3,
                min=positions.min(axis=0).tolist(),
                max=positions.max(axis=0).tolist(),
            )
        ],
        bufferViews=[BufferView(buffer=0, byteOffset=0, byteLength=len(blob), target=ARRAY_BUFFER)],
        buffers=[Buffer(byteLength=len(blob))],
    )
    if extras is not None:
        gltf.extras = extras
    gltf.set_binary_blob(blob)
    return b"".join(gltf.save_to_bytes())


def box(center, half=50.0):
    """Axis-aligned 3D Tiles box around ``center``."""
    x, y, z = center
    return [x, y, z, half, 0.0, 0.0, 0.0, half, 0.0, 0.0, 0.0, half]


@pytest.fixture
def fake_session():
    return FakeSession()
