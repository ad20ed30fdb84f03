"""
Orion: reconciles GTFS-realtime vehicle telemetry against GTFS static timetables
"""
