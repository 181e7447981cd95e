from pathlib import Path
import shutil
import sys
import tempfile
import unittest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from _fakes import build_sng
from catalog_models import ChartUnit, UnitKind
from chart_ingest import (
    UNKNOWN_ARTIST,
    build_chart_record,
    classify_assets,
    load_unit_files,
    render_song_ini,
    unit_display_name,
)
from chart_parser import ParsedMetadata, parse_song_ini


CHART_TEXT = b"[Song]\n{\n}\n[ExpertSingle]\n{\n}\n[HardDoubleBass]\n{\n}\n"
SONG_INI = b"[song]\nname = Song\nartist = Band\nyear = 2001\ndiff_guitar = 3\ndiff_bass = 2\n"
SYMMETRY_IGNORED = {"path", "chart_type", "fingerprint", "last_scanned", "id"}


class TestChartIngest(unittest.TestCase):
    def _folder_unit(self, root, files):
        folder = Path(root)
        folder.mkdir(parents=True, exist_ok=True)
        for name, data in files:
            (folder / name).write_bytes(data)
        return ChartUnit(
            path=str(folder),
            kind=UnitKind.FOLDER,
            member_file_names=tuple(sorted(name for name, _ in files)),
        )

    def _container_unit(self, path, files, metadata=None):
        path = Path(path)
        path.write_bytes(build_sng(files, metadata=metadata))
        return ChartUnit(path=str(path), kind=UnitKind.CONTAINER, member_file_names=(path.name,))

    def test_classify_assets(self):
        assets = classify_assets(
            ["Video.WEBM", "background.jpg", "album.png", "guitar.ogg", "drums_1.opus", "lyrics.txt", "notes.chart"]
        )

        self.assertEqual(assets.video, "Video.WEBM")
        self.assertEqual(assets.background, "background.jpg")
        self.assertEqual(assets.album_art, "album.png")
        self.assertEqual(assets.stems, {"guitar": "guitar.ogg", "drums_1": "drums_1.opus"})
        self.assertEqual(assets.lyrics, "lyrics.txt")

    def test_classify_assets_ignores_unknown_names(self):
        assets = classify_assets(["song.mp3", "crowd.ogg", "cover.png"])
        self.assertEqual(assets.stems, {"crowd": "crowd.ogg"})
        self.assertIsNone(assets.background)
        self.assertIsNone(assets.video)
        self.assertIsNone(assets.album_art)
        self.assertNotIn("audio", vars(assets))

    def test_render_song_ini_parses_back(self):
        rendered = render_song_ini({"name": "Song", "diff_guitar": "4"})
        self.assertTrue(rendered.startswith(b"[song]\n"))
        self.assertEqual(parse_song_ini(rendered.decode("utf-8")), {"name": "Song", "diff_guitar": 4})

    def test_folder_loads_only_parser_files(self):
        unit = self._folder_unit(
            Path(self._tmp_dir()) / "Song",
            [("notes.chart", CHART_TEXT), ("song.ini", SONG_INI), ("song.ogg", b"OggS" * 100)],
        )

        files = {item.file_name: item.data for item in load_unit_files(unit)}

        self.assertEqual(files["notes.chart"], CHART_TEXT)
        self.assertEqual(files["song.ini"], SONG_INI)
        self.assertEqual(files["song.ogg"], b"")

    def test_container_metadata_becomes_song_ini(self):
        unit = self._container_unit(
            Path(self._tmp_dir()) / "Song.sng",
            [("notes.chart", CHART_TEXT), ("song.ogg", b"OggS")],
            metadata={"name": "Song"},
        )

        files = {item.file_name: item.data for item in load_unit_files(unit)}

        self.assertEqual(files["song.ogg"], b"")
        self.assertIn(b"name = Song", files["song.ini"])

    def test_container_song_ini_member_wins_over_metadata(self):
        unit = self._container_unit(
            Path(self._tmp_dir()) / "Song.sng",
            [("song.ini", SONG_INI)],
            metadata={"name": "Other"},
        )

        files = load_unit_files(unit)

        self.assertEqual([item.file_name for item in files], ["song.ini"])
        self.assertEqual(files[0].data, SONG_INI)

    def test_unit_display_name(self):
        self.assertEqual(unit_display_name(ChartUnit("/lib/My Song.SNG", UnitKind.CONTAINER)), "My Song")
        self.assertEqual(unit_display_name(ChartUnit("/lib/My Song", UnitKind.FOLDER)), "My Song")

    def test_build_record_from_folder(self):
        unit = self._folder_unit(
            Path(self._tmp_dir()) / "Folder Name",
            [
                ("notes.chart", CHART_TEXT),
                ("song.ini", SONG_INI),
                ("song.ogg", b"OggS"),
                ("album.png", b"png"),
                ("video.mp4", b"mp4"),
            ],
        )

        record = build_chart_record(unit, "fingerprint")

        self.assertEqual(record.path, unit.path)
        self.assertEqual(record.name, "Song")
        self.assertEqual(record.artist, "Band")
        self.assertEqual(record.year, 2001)
        self.assertEqual(record.diff_guitar, 3)
        self.assertEqual(record.guitar_diffs, "x")
        self.assertEqual(record.bass_diffs, "h")
        self.assertTrue(record.has_guitar)
        self.assertTrue(record.has_bass)
        self.assertFalse(record.has_drums)
        self.assertEqual(record.chart_type, "chart")
        self.assertTrue(record.has_album_art)
        self.assertTrue(record.has_video)
        self.assertFalse(record.has_stems)
        self.assertFalse(record.has_lyrics)
        self.assertEqual(record.fingerprint, "fingerprint")
        self.assertTrue(record.last_scanned)
        self.assertIsNone(record.id)

    def test_name_and_artist_fallbacks(self):
        unit = self._container_unit(Path(self._tmp_dir()) / "Untitled Track.sng", [("notes.chart", CHART_TEXT)])

        record = build_chart_record(unit, "fp")

        self.assertEqual(record.name, "Untitled Track")
        self.assertEqual(record.artist, UNKNOWN_ARTIST)
        self.assertEqual(record.chart_type, "sng")

    def test_lyrics_file_sets_has_lyrics(self):
        unit = self._folder_unit(
            Path(self._tmp_dir()) / "Song",
            [("notes.chart", CHART_TEXT), ("song.ogg", b"OggS"), ("lyrics.txt", b"la la")],
        )
        self.assertTrue(build_chart_record(unit, "fp").has_lyrics)

    def test_custom_parse_function_receives_placeholders(self):
        unit = self._folder_unit(
            Path(self._tmp_dir()) / "Song",
            [("notes.chart", CHART_TEXT), ("song.ogg", b"OggS")],
        )
        seen = {}

        def parse(files):
            seen.update({item.file_name: item.data for item in files})
            return ParsedMetadata(name="Custom", presence={"keys": True})

        record = build_chart_record(unit, "fp", parse)

        self.assertEqual(seen, {"notes.chart": CHART_TEXT, "song.ogg": b""})
        self.assertEqual(record.name, "Custom")
        self.assertTrue(record.has_keys)
        self.assertEqual(record.guitar_diffs, "")

    def test_folder_and_container_produce_the_same_metadata(self):
        tmp_dir = Path(self._tmp_dir())
        members = [
            ("notes.chart", CHART_TEXT),
            ("song.ogg", b"OggS" * 8),
            ("guitar.ogg", b"OggS"),
            ("album.png", b"png"),
            ("background.jpg", b"jpg"),
        ]
        folder_unit = self._folder_unit(tmp_dir / "Song", members + [("song.ini", SONG_INI)])
        container_unit = self._container_unit(
            tmp_dir / "Song.sng",
            members,
            metadata={"name": "Song", "artist": "Band", "year": "2001", "diff_guitar": "3", "diff_bass": "2"},
        )

        folder_record = build_chart_record(folder_unit, "folder-fp").to_dict()
        container_record = build_chart_record(container_unit, "container-fp").to_dict()

        for key in SYMMETRY_IGNORED:
            folder_record.pop(key)
            container_record.pop(key)
        self.assertEqual(folder_record, container_record)

    def _tmp_dir(self):
        path = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, path, ignore_errors=True)
        return path


if __name__ == "__main__":
    unittest.main()
