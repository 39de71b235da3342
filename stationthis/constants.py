DB_SCHEMA = "stationthis"
