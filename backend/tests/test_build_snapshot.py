"""Tests for the snapshot command line."""

from transit_tracker.build_snapshot import main
from transit_tracker.core.gtfs_loader import SNAPSHOT_FILES, SnapshotSource

TABLES = {
    "routes.txt": "route_id,route_short_name,route_type\ntallinn_tram_1,1,0\n",
    "stops.txt": "stop_id,stop_name,stop_lat,stop_lon\n1,Kopli,59.44,24.70\n2,Balti jaam,59.44,24.72\n",
    "trips.txt": "route_id,service_id,trip_id,direction_id,shape_id\ntallinn_tram_1,wk,t1,0,s1\n",
    "stop_times.txt": (
        "trip_id,arrival_time,departure_time,stop_id,stop_sequence,shape_dist_traveled\n"
        "t1,08:00:00,08:00:00,1,1,0\n"
        "t1,08:06:00,08:06:00,2,2,1130\n"
    ),
    "shapes.txt": (
        "shape_id,shape_pt_lat,shape_pt_lon,shape_pt_sequence,shape_dist_traveled\n"
        "s1,59.44,24.70,1,0\n"
        "s1,59.44,24.72,2,1130\n"
    ),
}


def test_builds_snapshot_from_tables(tmp_path):
    gtfs = tmp_path / "gtfs"
    gtfs.mkdir()
    for name, content in TABLES.items():
        (gtfs / name).write_text(content, encoding="utf-8")
    out = tmp_path / "out"

    assert main(["--gtfs-dir", str(gtfs), "--out", str(out)]) == 0

    for name in SNAPSHOT_FILES:
        assert (out / name).exists()
    model = SnapshotSource(out).load()
    assert model.resolve_route(3, "1") == "tallinn_tram_1"
    assert model.schedule[("tallinn_tram_1", "2")][0].departure_time == "08:06:00"


def test_missing_tables_exit_nonzero(tmp_path):
    assert main(["--gtfs-dir", str(tmp_path / "nothing"), "--out", str(tmp_path / "out")]) == 1
