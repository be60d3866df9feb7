import asyncio

from app.config import load_settings
from app.schoolpass.client import SchoolPassClient
from app.schoolpass.service import RosterGateway


async def main() -> None:
    settings = load_settings()
    client = SchoolPassClient(timeout=settings.request_timeout)
    roster = RosterGateway(client, dismissal_location_pattern=settings.dismissal_location_pattern)
    try:
        await roster.authenticate(settings.schoolpass_username, settings.schoolpass_password)
        groupings = await roster.get_groupings(matching_only=False)
        for grouping in groupings:
            name = str(grouping.get("dismissalLocationName") or "")
            marker = "*" if roster.pattern.search(name) else " "
            print(f"{marker} {grouping.get('dismissalLocationId')}\t{name}\tstudents={grouping.get('studentCount')}")
        print(f'Pattern "{settings.dismissal_location_pattern}" matched entries are marked with *')
    finally:
        await client.close()


if __name__ == "__main__":
    asyncio.run(main())
