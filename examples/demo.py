from datetime import datetime, timedelta

from insider_threat_monitor import EngineConfig, InMemoryRepository, MonitoringService
from insider_threat_monitor.broadcaster import LoggingBroadcaster
from insider_threat_monitor.models import Location, utcnow


class StaticResolver:
    def __init__(self, locations: dict[str, Location]):
        self.locations = locations

    def lookup(self, ip: str) -> Location:
        return self.locations[ip]


class SteppingClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now


def main() -> None:
    clock = SteppingClock(utcnow().replace(hour=2, minute=15))
    resolver = StaticResolver(
        {
            "198.51.100.10": Location("United States", "New York", 40.7128, -74.0060, "198.51.100.10"),
            "203.0.113.40": Location("China", "Beijing", 39.9042, 116.4074, "203.0.113.40"),
        }
    )
    service = MonitoringService(
        InMemoryRepository(),
        resolver=resolver,
        broadcaster=LoggingBroadcaster(),
        config=EngineConfig(),
        clock=clock,
    )

    try:
        for _ in range(4):
            service.record_failed_login("alice", "198.51.100.10")
        first = service.record_successful_login("alice", "198.51.100.10")
        print("Office login score:", first.assessment.score, first.assessment.level.value)
        for reason in first.assessment.reasons:
            print(f"- {reason}")

        clock.now += timedelta(minutes=20)
        service.end_session("alice")
        clock.now += timedelta(minutes=25)

        second = service.record_successful_login("alice", "203.0.113.40")
        if second.anomaly is not None:
            print(
                "Geo anomaly:",
                second.anomaly.anomaly_type.value,
                f"{second.anomaly.hours_between}h vs {second.anomaly.min_travel_hours}h",
                "score",
                second.anomaly.risk.score,
            )

        for index in range(140):
            service.record_download_touch("alice", f"/srv/finance/q{index % 4}/ledger-{index}.xlsx", 9_000_000)
        alert = service.downloads.evaluate("alice")
        if alert is not None:
            print(f"Bulk download: {alert.total_files} files, {alert.total_size_mb}MB from {alert.folder_path}")

        print("Open threats:")
        for threat in service.threats.list_threats(employee_id="alice", solved=False):
            print(f"- [{threat.category.value}] {threat.risk.score} {threat.risk.level.value} x{threat.occurrences}")
    finally:
        service.stop()


if __name__ == "__main__":
    main()
