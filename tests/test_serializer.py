from __future__ import annotations

import struct
from pathlib import Path

import pytest

from terrain.errors import MeshContractError, MeshDecodeError
from terrain.mesh import HalfEdgeType, TerrainMesh
from terrain.serializer import decode_mesh, encode_mesh, load_mesh, save_mesh
from terrain.tile_builder import build_tile_mesh
from terrain.tile_pyramid import TileGeometry, TileID
from terrain.topology import check_mesh, release_triangle


def _snapshot(mesh: TerrainMesh) -> tuple:
    return (
        mesh.mesh_id,
        [(v.x, v.y, v.z, v.outgoing) for v in mesh.vertices],
        [(t.half_edge, t.tile, t.split_depth) for t in mesh.triangles],
        [(e.start, e.triangle, e.next, e.twin, e.type) for e in mesh.half_edges],
    )


def test_encoded_mesh_decodes_to_the_same_structure() -> None:
    mesh = build_tile_mesh(
        TileID(z=3, x=5, y=2), geometry=TileGeometry(), oracle=None, grid_size=4, mesh_id=42
    )
    mesh.vertices[5].z = 1234.5

    decoded = decode_mesh(encode_mesh(mesh))

    assert _snapshot(decoded) == _snapshot(mesh)
    assert check_mesh(decoded) == []
    assert decoded.half_edges_by_type(HalfEdgeType.UP) == mesh.half_edges_by_type(HalfEdgeType.UP)


def test_layout_is_big_endian_with_fixed_record_sizes(unit_square_mesh: TerrainMesh) -> None:
    data = encode_mesh(unit_square_mesh)

    assert struct.unpack_from(">ii", data, 0) == (0, 4)
    vid, x, y, z, outgoing = struct.unpack_from(">idddi", data, 8)
    assert (vid, x, y, z) == (0, 0.0, 0.0, 0.0)
    assert outgoing == unit_square_mesh.vertices[0].outgoing

    expected = 4 + (4 + 4 * 32) + (4 + 2 * 24) + (4 + 6 * 24)
    assert len(data) == expected

    triangle_offset = 4 + 4 + 4 * 32
    assert struct.unpack_from(">i", data, triangle_offset) == (2,)
    tid, half_edge, tile_x, tile_y, tile_z, depth = struct.unpack_from(
        ">iiiiii", data, triangle_offset + 4
    )
    assert (tid, half_edge, tile_x, tile_y, tile_z, depth) == (0, 0, 0, 0, 0, 0)


def test_triangle_without_tile_is_written_as_minus_one() -> None:
    mesh = TerrainMesh(mesh_id=7)
    mesh.add_triangle(mesh.new_vertex(0, 0, 0), mesh.new_vertex(1, 0, 0), mesh.new_vertex(0, 1, 0))
    mesh.set_outgoing_from_half_edges()

    decoded = decode_mesh(encode_mesh(mesh))
    assert decoded.mesh_id == 7
    assert decoded.triangles[0].tile is None


def test_encode_requires_compacted_mesh(unit_square_mesh: TerrainMesh) -> None:
    release_triangle(unit_square_mesh, 0)
    with pytest.raises(MeshContractError, match="compacted"):
        encode_mesh(unit_square_mesh)

    unit_square_mesh.remove_deleted_objects()
    assert len(decode_mesh(encode_mesh(unit_square_mesh)).triangles) == 1


def test_truncated_data_is_rejected(unit_square_mesh: TerrainMesh) -> None:
    data = encode_mesh(unit_square_mesh)
    with pytest.raises(MeshDecodeError, match="Truncated"):
        decode_mesh(data[:-3])
    with pytest.raises(MeshDecodeError, match="Truncated"):
        decode_mesh(b"\x00\x00")


def test_trailing_bytes_are_rejected(unit_square_mesh: TerrainMesh) -> None:
    with pytest.raises(MeshDecodeError, match="trailing"):
        decode_mesh(encode_mesh(unit_square_mesh) + b"\x00")


def test_out_of_range_reference_is_rejected(unit_square_mesh: TerrainMesh) -> None:
    data = bytearray(encode_mesh(unit_square_mesh))
    # First vertex: outgoing half-edge lives after id and three doubles.
    struct.pack_into(">i", data, 8 + 4 + 24, 99)
    with pytest.raises(MeshDecodeError, match="out of range"):
        decode_mesh(bytes(data))


def test_unknown_half_edge_type_is_rejected(unit_square_mesh: TerrainMesh) -> None:
    data = bytearray(encode_mesh(unit_square_mesh))
    first_edge = 4 + (4 + 4 * 32) + (4 + 2 * 24) + 4
    struct.pack_into(">i", data, first_edge + 4, 17)
    with pytest.raises(MeshDecodeError, match="Unknown half-edge type"):
        decode_mesh(bytes(data))


def test_non_dense_ids_are_rejected(unit_square_mesh: TerrainMesh) -> None:
    data = bytearray(encode_mesh(unit_square_mesh))
    struct.pack_into(">i", data, 8, 3)
    with pytest.raises(MeshDecodeError, match="dense"):
        decode_mesh(bytes(data))


def test_save_and_load_mesh(tmp_path: Path, unit_square_mesh: TerrainMesh) -> None:
    path = save_mesh(unit_square_mesh, tmp_path / "meshes" / "0" / "0" / "0.mesh")
    assert path.is_file()
    assert _snapshot(load_mesh(path)) == _snapshot(unit_square_mesh)
