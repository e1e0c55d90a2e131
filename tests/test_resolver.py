# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Tests for node classification, link descriptions and directory listings."""

import pytest

from dataexpl.core.dag import DagReader, make_cid
from dataexpl.core.exceptions import UnsupportedNodeError
from dataexpl.core.models import (
    ContainerDescriptor,
    LeafDescriptor,
    NodeKind,
    OpaqueDescriptor,
    TraversalPolicy,
)
from dataexpl.core.resolver import (
    OCTET_STREAM,
    TEXT_PLAIN,
    TypeResolver,
    extension_content_type,
    sniff_content_type,
)

from .helpers import (
    PNG_BYTES,
    cbor_node,
    chunked_file,
    dag_of,
    directory,
    file_node,
    hamt_shard,
    metadata_node,
    raw_node,
    symlink,
)


class TestSniffing:

    def test_png_signature(self):
        assert sniff_content_type(PNG_BYTES) == "image/png"

    def test_plain_text(self):
        assert sniff_content_type(b"just some words\n") == TEXT_PLAIN

    def test_html_document(self):
        assert sniff_content_type(b"  <html><body>hi</body></html>").startswith("text/html")

    def test_binary(self):
        assert sniff_content_type(b"\x01\x9f\x02\x00" * 8) == OCTET_STREAM

    def test_cut_multibyte_sequence_still_text(self):
        text = "zażółć".encode("utf-8") * 3
        assert sniff_content_type(text[:-1]) == TEXT_PLAIN

    def test_extension(self):
        assert extension_content_type("photo.jpg") == "image/jpeg"
        assert extension_content_type("") == ""
        assert extension_content_type("noext") == ""


class TestClassify:

    def test_directory(self, policy):
        root = directory([("a", raw_node(b"a")), ("b", raw_node(b"b"))])
        desc = TypeResolver(dag_of(root), policy).classify(root)

        assert isinstance(desc, ContainerDescriptor)
        assert desc.kind == NodeKind.DIRECTORY
        assert desc.summary() == "DIR (2 entries)"

    def test_hamt(self, policy):
        root = hamt_shard([("a", raw_node(b"a"))])
        desc = TypeResolver(dag_of(root), policy).classify(root)

        assert desc.kind == NodeKind.SHARDED_DIRECTORY
        assert desc.summary() == "HAMT (1 links)"

    def test_single_block_file_is_sniffed(self, policy):
        node = file_node(PNG_BYTES)
        desc = TypeResolver(dag_of(node), policy).classify(node)

        assert desc == LeafDescriptor(NodeKind.FILE, len(PNG_BYTES), "image/png")

    def test_multi_block_file_uses_filename_only(self, policy):
        a, b = raw_node(b"12"), raw_node(b"34")
        root = chunked_file(a, b)
        resolver = TypeResolver(dag_of(root), policy)

        assert resolver.classify(root).content_type == ""
        assert resolver.classify(root, "notes.txt").content_type == "text/plain"

    def test_raw_file(self, policy):
        node = raw_node(b"plain words")
        desc = TypeResolver(dag_of(node), policy).classify(node)

        assert desc.kind == NodeKind.RAW_FILE
        assert desc.content_type == TEXT_PLAIN

    def test_symlink(self, policy):
        node = symlink("../target")
        desc = TypeResolver(dag_of(node), policy).classify(node)

        assert desc.kind == NodeKind.SYMLINK
        assert desc.size == len("../target")

    def test_structured(self, policy):
        node = cbor_node({"k": "v"})
        assert TypeResolver(dag_of(node), policy).classify(node).summary() == "DAG-CBOR"

    def test_metadata_is_opaque(self, policy):
        node = metadata_node()
        desc = TypeResolver(dag_of(node), policy).classify(node)

        assert isinstance(desc, OpaqueDescriptor)
        assert desc.summary() == "unknown ufs type 3"

    def test_content_type_rewinds(self, policy):
        node = file_node(b"some text")
        dag = dag_of(node)
        reader = DagReader(dag, node)

        assert TypeResolver(dag, policy).content_type(reader) == TEXT_PLAIN
        assert reader.tell() == 0

    def test_repeated_classification_is_stable(self, policy):
        text = file_node(b"stable text\n")
        image = raw_node(PNG_BYTES)
        doc = cbor_node({"k": "v"})
        chunks = chunked_file(raw_node(b"12"), raw_node(b"34"))
        root = directory([("text", text), ("image", image), ("doc", doc), ("chunks", chunks)])
        resolver = TypeResolver(dag_of(root, text, image, doc, chunks), policy)

        def snapshot(node, name=""):
            desc = resolver.classify(node, name)
            return desc.kind, getattr(desc, "size", None), getattr(desc, "content_type", None), desc.summary()

        first = [snapshot(text), snapshot(image), snapshot(chunks, "notes.txt"), snapshot(root)]
        for _ in range(3):
            snapshot(doc)
            resolver.list_directory(root)
            assert [snapshot(text), snapshot(image), snapshot(chunks, "notes.txt"), snapshot(root)] == first
            # Interleaved lookups under other names do not leak into later ones.
            assert snapshot(chunks)[2] == ""

        assert first[0][2] == TEXT_PLAIN
        assert first[1][2] == "image/png"


class TestDescribeLink:

    def test_missing_blocks_are_tentative(self, policy):
        resolver = TypeResolver(dag_of(), policy)

        assert resolver.describe_link(file_node(b"x").cid).text == "DAG-PB"
        assert resolver.describe_link(raw_node(b"x").cid).text == "RAW"
        desc = resolver.describe_link(cbor_node(1).cid)
        assert (desc.text, desc.full) == ("DAG-CBOR", False)
        assert resolver.describe_link(make_cid("dag-json", b"{}")).text == "UNK:0x129"

    def test_present_nodes(self, policy):
        sub = directory([("x", raw_node(b"x"))])
        shard = hamt_shard([("x", raw_node(b"x"))])
        link = symlink("x")
        pb_file = file_node(PNG_BYTES)
        raw = raw_node(b"text here")
        cbor = cbor_node([1, 2])
        resolver = TypeResolver(dag_of(sub, shard, link, pb_file, raw, cbor), policy)

        assert resolver.describe_link(sub.cid).text == "DIR (1 entries)"
        assert resolver.describe_link(shard.cid).text == "HAMT (1 links)"
        assert resolver.describe_link(link.cid).text == "LINK"
        assert resolver.describe_link(pb_file.cid).text == "FILE (pb,image/png)"
        assert resolver.describe_link(raw.cid).text == f"FILE (raw,{TEXT_PLAIN})"
        assert resolver.describe_link(raw.cid, "data.bin").text == "FILE (raw,application/octet-stream)"
        assert resolver.describe_link(cbor.cid).text == "DAG-CBOR"

    def test_file_needing_missing_blocks_is_tentative(self, policy):
        a = raw_node(b"head")
        root = chunked_file(a, raw_node(b"tail"))
        desc = TypeResolver(dag_of(root), policy).describe_link(root.cid)

        assert (desc.text, desc.full) == ("FILE (pb,?)", False)

    def test_file_deeper_than_policy_is_tentative(self):
        a = raw_node(b"deep")
        mid = chunked_file(a)
        root = chunked_file(mid)
        resolver = TypeResolver(dag_of(root, mid, a), TraversalPolicy(max_depth=1, max_width=16))

        assert resolver.describe_link(root.cid).text == "FILE (pb,?)"

    def test_metadata_unsupported(self, policy):
        node = metadata_node()
        with pytest.raises(UnsupportedNodeError, match="unknown ufs type 3"):
            TypeResolver(dag_of(node), policy).describe_link(node.cid)


class TestListDirectory:

    def test_first_width_entries_described(self, policy):
        children = [file_node(f"file {i}".encode()) for i in range(20)]
        root = directory([(f"f{i:02}.txt", c) for i, c in enumerate(children)])
        entries = TypeResolver(dag_of(root, *children), policy).list_directory(root)

        assert len(entries) == 20
        described = [e for e in entries if not e.deferred]
        deferred = [e for e in entries if e.deferred]
        assert len(described) == 16
        assert len(deferred) == 4
        assert described[0].desc == "FILE (pb,text/plain)"
        assert deferred[0].name == "f16.txt"
        assert deferred[0].path == "Links/16/Hash"
        assert not deferred[0].full

    def test_zero_width_describes_nothing(self):
        children = [raw_node(bytes([i])) for i in range(3)]
        root = directory([(str(i), c) for i, c in enumerate(children)])
        entries = TypeResolver(dag_of(root, *children), TraversalPolicy(15, 0)).list_directory(root)

        assert all(e.deferred for e in entries)

    def test_failed_description_is_inline(self, policy):
        root = directory([("meta", metadata_node()), ("ok", raw_node(b"ok"))])
        entries = TypeResolver(dag_of(root, metadata_node(), raw_node(b"ok")), policy).list_directory(root)

        assert entries[0].desc == "?? (unknown ufs type 3)"
        assert entries[1].desc.startswith("FILE (raw,")

    def test_hamt_prefixes_stripped_and_subshards_expanded(self, policy):
        a, b, c = raw_node(b"a"), raw_node(b"b"), raw_node(b"c")
        sub = hamt_shard([("b.txt", b), ("c.txt", c)])
        root = hamt_shard([("a.txt", a), ("", sub)])
        entries = TypeResolver(dag_of(root, sub, a, b, c), policy).list_directory(root)

        assert [e.name for e in entries] == ["a.txt", "b.txt", "c.txt"]
        assert [e.path for e in entries] == ["Links/0/Hash", "Links/1/Hash/Links/0/Hash", "Links/1/Hash/Links/1/Hash"]

    def test_missing_subshard_listed_as_itself(self, policy):
        sub = hamt_shard([("b.txt", raw_node(b"b"))])
        root = hamt_shard([("a.txt", raw_node(b"a")), ("", sub)])
        entries = TypeResolver(dag_of(root, raw_node(b"a")), policy).list_directory(root)

        assert [e.name for e in entries] == ["a.txt", "01"]
        assert entries[1].desc == "DAG-PB"
        assert not entries[1].full
