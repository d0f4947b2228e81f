import struct
import sys
import tempfile
import unittest
from pathlib import Path
from typing import Sequence, Tuple
from unittest import mock

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import icepatch
from icepatch import (
    CONTAINER_HEADER,
    CONTAINER_HEADER_SPAN,
    ENTRY_HEADER,
    ICE_MAGIC,
    ICE_VERSION,
    Container,
    Entry,
    Group,
    InvalidEntryName,
    MalformedGroupTable,
    MalformedHeader,
    layout_group,
    parse_container,
    serialize_container,
)


def _build_entry(name: bytes, payload: bytes, ext: bytes = b"") -> bytes:
    """Encode a single entry record the way the game tools lay it out."""

    encoded = name + b"\x00"
    header_size = ENTRY_HEADER.size + len(encoded)
    header_size += (-header_size) % 16
    entry_size = header_size + len(payload)
    entry_size += (-entry_size) % 16

    record = bytearray(ENTRY_HEADER.pack(ext, entry_size, len(payload), header_size, len(encoded)))
    record.extend(encoded)
    record.extend(b"\x00" * (header_size - len(record)))
    record.extend(payload)
    record.extend(b"\x00" * (entry_size - len(record)))
    return bytes(record)


def _build_container(
    group1: Sequence[Tuple[bytes, bytes]],
    group2: Sequence[Tuple[bytes, bytes]] = (),
    *,
    flags: int = 0,
) -> bytearray:
    g1 = b"".join(_build_entry(name, payload, name.rsplit(b".", 1)[-1][:4]) for name, payload in group1)
    g2 = b"".join(_build_entry(name, payload, name.rsplit(b".", 1)[-1][:4]) for name, payload in group2)
    total = CONTAINER_HEADER_SPAN + len(g1) + len(g2)
    header = CONTAINER_HEADER.pack(
        ICE_MAGIC, ICE_VERSION, flags, CONTAINER_HEADER_SPAN, total, len(group1), len(g1), len(group2), len(g2)
    )
    data = bytearray(header)
    data.extend(b"\x00" * (CONTAINER_HEADER_SPAN - len(header)))
    data.extend(g1)
    data.extend(g2)
    return data


class ParseContainerTests(unittest.TestCase):
    def test_parse_two_groups(self) -> None:
        data = _build_container(
            [(b"a.txt", b"AAAAA"), (b"b.txt", b"BBB")],
            [(b"model.aqp", b"\x01\x02")],
            flags=0x10,
        )

        container = parse_container(bytes(data))

        self.assertEqual(container.version, ICE_VERSION)
        self.assertEqual(container.flags, 0x10)
        self.assertEqual(container.group("1").names(), ["a.txt", "b.txt"])
        self.assertEqual(container.group("2").names(), ["model.aqp"])

        first, second = container.group("1").entries
        self.assertEqual(first.payload, b"AAAAA")
        self.assertEqual(first.size, 5)
        self.assertEqual(first.position, 0)
        self.assertEqual(first.ext, b"txt")
        self.assertEqual(first.offset, 0)
        # 20 byte header + "a.txt\0" aligns to 32, plus 5 payload bytes aligns to 48.
        self.assertEqual(second.offset, 48)
        self.assertEqual(second.position, 1)
        self.assertEqual(container.group("2").entries[0].ext, b"aqp")

    def test_parse_empty_groups(self) -> None:
        container = parse_container(bytes(_build_container([])))
        self.assertEqual(container.group("1").entries, [])
        self.assertEqual(container.group("2").entries, [])

    def test_parse_is_repeatable(self) -> None:
        data = bytes(_build_container([(b"a.txt", b"AAAAA")]))
        self.assertEqual(parse_container(data), parse_container(data))

    def test_truncated_header(self) -> None:
        data = bytes(_build_container([(b"a.txt", b"AAAAA")]))
        with self.assertRaises(MalformedHeader):
            parse_container(data[:20])

    def test_wrong_magic(self) -> None:
        data = _build_container([(b"a.txt", b"AAAAA")])
        data[0:4] = b"NOPE"
        with self.assertRaises(MalformedHeader):
            parse_container(bytes(data))

    def test_unsupported_version(self) -> None:
        data = _build_container([(b"a.txt", b"AAAAA")])
        struct.pack_into("<I", data, 4, 3)
        with self.assertRaises(MalformedHeader):
            parse_container(bytes(data))

    def test_total_size_mismatch(self) -> None:
        data = _build_container([(b"a.txt", b"AAAAA")])
        data.extend(b"\x00" * 16)
        with self.assertRaises(MalformedHeader):
            parse_container(bytes(data))

    def test_group_sizes_must_add_up(self) -> None:
        data = _build_container([(b"a.txt", b"AAAAA")])
        # g1_size lives after magic, version, flags, header_size, total_size and g1_count.
        struct.pack_into("<I", data, 24, 16)
        with self.assertRaises(MalformedHeader):
            parse_container(bytes(data))

    def test_entry_count_runs_past_group(self) -> None:
        data = _build_container([(b"a.txt", b"AAAAA"), (b"b.txt", b"BBB")])
        struct.pack_into("<I", data, 20, 3)
        with self.assertRaises(MalformedGroupTable):
            parse_container(bytes(data))

    def test_entry_runs_past_group(self) -> None:
        data = _build_container([(b"a.txt", b"AAAAA")])
        struct.pack_into("<I", data, CONTAINER_HEADER_SPAN + 4, 0x1000)
        with self.assertRaises(MalformedGroupTable):
            parse_container(bytes(data))

    def test_trailing_bytes_after_entries(self) -> None:
        data = _build_container([(b"a.txt", b"AAAAA"), (b"b.txt", b"BBB")])
        struct.pack_into("<I", data, 20, 1)
        with self.assertRaises(MalformedGroupTable):
            parse_container(bytes(data))

    def test_unterminated_name(self) -> None:
        data = _build_container([(b"a.txt", b"AAAAA")])
        name_end = CONTAINER_HEADER_SPAN + ENTRY_HEADER.size + len(b"a.txt")
        data[name_end] = ord("x")
        with self.assertRaises(MalformedGroupTable):
            parse_container(bytes(data))

    def test_extension_bytes_survive_rewrite(self) -> None:
        record = _build_entry(b"a.txt", b"AAAAA", b"\xe9xt")
        header = CONTAINER_HEADER.pack(
            ICE_MAGIC, ICE_VERSION, 0, CONTAINER_HEADER_SPAN, CONTAINER_HEADER_SPAN + len(record), 1, len(record), 0, 0
        )
        data = header + b"\x00" * (CONTAINER_HEADER_SPAN - len(header)) + record

        container = parse_container(data)
        self.assertEqual(container.group("1").entries[0].ext, b"\xe9xt")

        rewritten = serialize_container(container)
        self.assertEqual(rewritten, data)
        self.assertEqual(parse_container(rewritten).group("1").entries[0].ext, b"\xe9xt")

    def test_duplicate_names(self) -> None:
        data = _build_container([(b"a.txt", b"AAAAA"), (b"a.txt", b"BBB")])
        with self.assertRaises(MalformedGroupTable):
            parse_container(bytes(data))


class SerializeContainerTests(unittest.TestCase):
    def _container(self) -> Container:
        return Container(
            version=ICE_VERSION,
            flags=0x2,
            groups={
                "1": Group(
                    "1",
                    [
                        Entry("a.txt", b"AAAAAAA", 0, b"txt"),
                        Entry("b.txt", b"BBB", 1, b"txt"),
                        Entry("c.txt", b"", 2, b"txt"),
                    ],
                ),
                "2": Group("2", [Entry("texture.dds", b"DDS " + b"\xff" * 40, 0, b"dds")]),
            },
        )

    def test_round_trip(self) -> None:
        container = self._container()
        parsed = parse_container(serialize_container(container))

        self.assertEqual(parsed.flags, container.flags)
        self.assertEqual(parsed.group("1"), container.group("1"))
        self.assertEqual(parsed.group("2"), container.group("2"))

    def test_matches_hand_built_layout(self) -> None:
        container = Container(
            version=ICE_VERSION,
            flags=0,
            groups={"1": Group("1", [Entry("a.txt", b"AAAAA", 0, b"txt"), Entry("b.txt", b"BBB", 1, b"txt")])},
        )
        expected = _build_container([(b"a.txt", b"AAAAA"), (b"b.txt", b"BBB")])
        self.assertEqual(serialize_container(container), bytes(expected))

    def test_offsets_are_cumulative_and_aligned(self) -> None:
        container = self._container()
        data = serialize_container(container)
        parsed = parse_container(data)

        offsets = layout_group(container.group("1"))
        self.assertEqual(offsets, [entry.offset for entry in parsed.group("1").entries])
        self.assertEqual(offsets[0], 0)
        for offset in offsets:
            self.assertEqual(offset % 16, 0)

        for entry, offset in zip(container.group("1").entries, offsets):
            _ext, _entry_size, data_size, header_size, _name_length = ENTRY_HEADER.unpack_from(
                data, CONTAINER_HEADER_SPAN + offset
            )
            start = CONTAINER_HEADER_SPAN + offset + header_size
            self.assertEqual(data_size, entry.size)
            self.assertEqual(data[start : start + data_size], entry.payload)

    def test_records_are_placed_at_layout_offsets(self) -> None:
        container = self._container()
        shifted = [0, 64, 160]

        with mock.patch.object(icepatch, "layout_group", side_effect=lambda group: shifted[: len(group.entries)]):
            data = serialize_container(container)

        for entry, offset in zip(container.group("1").entries, shifted):
            _ext, _entry_size, data_size, header_size, _name_length = ENTRY_HEADER.unpack_from(
                data, CONTAINER_HEADER_SPAN + offset
            )
            start = CONTAINER_HEADER_SPAN + offset + header_size
            self.assertEqual(data[start : start + data_size], entry.payload)

    def test_groups_do_not_overlap(self) -> None:
        data = serialize_container(self._container())
        fields = CONTAINER_HEADER.unpack_from(data, 0)
        header_size, total_size, g1_count, g1_size, g2_count, g2_size = fields[3:]

        self.assertEqual(total_size, len(data))
        self.assertEqual((g1_count, g2_count), (3, 1))
        self.assertEqual(header_size + g1_size + g2_size, total_size)
        # The first group 2 record starts right where group 1 ends.
        ext = ENTRY_HEADER.unpack_from(data, header_size + g1_size)[0]
        self.assertEqual(ext, b"dds\x00")

    def test_missing_group_is_written_empty(self) -> None:
        container = Container(version=ICE_VERSION, flags=0, groups={"1": Group("1", [Entry("a.txt", b"A", 0)])})
        parsed = parse_container(serialize_container(container))
        self.assertEqual(parsed.group("2").entries, [])

    def test_non_ascii_name_is_rejected(self) -> None:
        container = Container(
            version=ICE_VERSION, flags=0, groups={"1": Group("1", [Entry("café.txt", b"A", 0)])}
        )
        with self.assertRaises(InvalidEntryName):
            serialize_container(container)

    def test_empty_name_is_rejected(self) -> None:
        container = Container(version=ICE_VERSION, flags=0, groups={"2": Group("2", [Entry("", b"A", 0)])})
        with self.assertRaises(InvalidEntryName):
            serialize_container(container)


class LoadContainerTests(unittest.TestCase):
    def test_load_from_memory_map(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "foo"
            path.write_bytes(bytes(_build_container([(b"a.txt", b"AAAAA")])))

            with mock.patch.object(icepatch, "MEMORY_MAP_THRESHOLD", 1):
                container = icepatch.load_container(path)

            self.assertEqual(container.group("1").entries[0].payload, b"AAAAA")

    def test_load_missing_file(self) -> None:
        with self.assertRaises(icepatch.ContainerUnavailable):
            icepatch.load_container(Path("/nonexistent/icepatch/container"))


if __name__ == "__main__":
    unittest.main()
