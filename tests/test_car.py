# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Tests for CAR reading/writing and the tiered block store."""

import pytest
from multiformats import varint

from dataexpl.core.blockstore import MemoryBlockStore, TieredBlockStore
from dataexpl.core.car import CarBlockSource, open_single_root, write_car
from dataexpl.core.exceptions import ArchiveIntegrityError, BlockNotFoundError
from dataexpl.core.explorer import dag_from_archive
from dataexpl.core.resolver import TypeResolver

from .helpers import car_of, carv2_of, cbor_node, directory, file_node, raw_node


class TestCarBlockSource:

    def test_reads_roots_and_blocks(self):
        leaf = raw_node(b"leaf data")
        root = directory([("leaf", leaf)])
        source = CarBlockSource.from_bytes(car_of(root, leaf))

        assert source.roots == [root.cid]
        assert source.version == 1
        assert len(source) == 2
        assert source.get(leaf.cid) == b"leaf data"
        assert set(source) == {root.cid, leaf.cid}

    def test_carv2_opens_like_carv1(self):
        leaf = raw_node(b"v2 payload")
        source = CarBlockSource.from_bytes(carv2_of(car_of(leaf)))

        assert source.version == 2
        assert source.roots == [leaf.cid]
        assert source.get(leaf.cid) == b"v2 payload"

    def test_missing_block(self):
        leaf = raw_node(b"x")
        source = CarBlockSource.from_bytes(car_of(leaf))

        assert not source.has(raw_node(b"y").cid)
        with pytest.raises(BlockNotFoundError):
            source.get(raw_node(b"y").cid)

    def test_tampered_block_fails_verification(self):
        leaf = raw_node(b"original")
        data = car_of(leaf).replace(b"original", b"tampered")
        source = CarBlockSource.from_bytes(data)

        with pytest.raises(ArchiveIntegrityError, match="does not match its content hash"):
            source.get(leaf.cid)

    def test_truncated_section(self):
        data = car_of(raw_node(b"some block bytes"))
        with pytest.raises(ArchiveIntegrityError, match="truncated"):
            CarBlockSource.from_bytes(data[:-4])

    def test_zero_length_section_ends_stream(self):
        leaf = raw_node(b"kept")
        data = car_of(leaf) + varint.encode(0) + b"garbage after the end"
        source = CarBlockSource.from_bytes(data)

        assert len(source) == 1

    @pytest.mark.parametrize("data", [
        b"",
        b"\x05abc",
        varint.encode(1) + b"\xa0",
        varint.encode(2) + b"\xff\xff",
    ])
    def test_bad_headers(self, data):
        with pytest.raises(ArchiveIntegrityError, match="invalid archive header"):
            CarBlockSource.from_bytes(data)

    def test_single_root_required(self):
        a, b = raw_node(b"a"), raw_node(b"b")
        data = write_car([a.cid, b.cid], [(a.cid, a.raw), (b.cid, b.raw)])

        with pytest.raises(ArchiveIntegrityError, match="wanted exactly one root, got 2"):
            open_single_root(data)

    def test_zero_roots(self):
        with pytest.raises(ArchiveIntegrityError, match="got 0"):
            open_single_root(write_car([], []))


class TestTieredBlockStore:

    def test_cold_tier_read_first(self):
        leaf = raw_node(b"cold")
        cold = CarBlockSource.from_bytes(car_of(leaf))
        warm = MemoryBlockStore()
        warm.put(leaf.cid, b"shadowed")
        store = TieredBlockStore(cold, warm)

        assert store.get(leaf.cid) == b"cold"

    def test_writes_go_to_warm_tier(self):
        leaf = raw_node(b"cold")
        extra = raw_node(b"warm")
        store = TieredBlockStore(CarBlockSource.from_bytes(car_of(leaf)), MemoryBlockStore())

        store.put(extra.cid, extra.raw)

        assert store.has(extra.cid)
        assert store.warm.get(extra.cid) == b"warm"
        assert not store.cold.has(extra.cid)

    def test_missing_in_both_tiers(self):
        store = TieredBlockStore(MemoryBlockStore(), MemoryBlockStore())
        with pytest.raises(BlockNotFoundError):
            store.get(raw_node(b"nowhere").cid)

    def test_dag_from_archive_adds_to_overlay(self):
        leaf = file_node(b"x")
        root, dag = dag_from_archive(car_of(leaf))
        synthesized = directory([("x", leaf)])

        dag.add(synthesized)

        assert root == leaf.cid
        assert dag.get(synthesized.cid).links[0].cid == leaf.cid


class TestCanonicalCids:

    def test_archive_cids_render_in_base32(self, policy):
        leaf = raw_node(b"leaf data")
        root = directory([("leaf", leaf)])
        data = car_of(root, leaf)

        source = CarBlockSource.from_bytes(data)
        assert str(source.roots[0]) == str(root.cid)
        assert {str(c) for c in source} == {str(root.cid), str(leaf.cid)}

        root_cid, dag = dag_from_archive(data)
        entry, = TypeResolver(dag, policy).list_directory(dag.get(root_cid))
        assert str(entry.cid) == str(leaf.cid)
        assert str(entry.cid).startswith("bafk")

    def test_links_inside_cbor_render_in_base32(self):
        leaf = raw_node(b"linked")
        doc = cbor_node({"leaf": leaf.cid, "list": [leaf.cid]})
        root_cid, dag = dag_from_archive(car_of(doc, leaf))

        value = dag.get(root_cid).value

        assert str(value["leaf"]) == str(leaf.cid)
        assert str(value["list"][0]).startswith("bafk")
