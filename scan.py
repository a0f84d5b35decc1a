import asyncio

from bleak import BleakScanner

from padctrl.core import DEVICE_NAME_PREFIXES


async def main():
    """Scan for BLE devices and flag the ones padctrl would connect to."""
    print("Scanning for BLE devices...")
    found = await BleakScanner.discover(return_adv=True)
    print(f"\nFound {len(found)} device(s):\n")
    for device, advertisement in found.values():
        name = device.name or advertisement.local_name or ""
        marker = "*" if name.lower().startswith(DEVICE_NAME_PREFIXES) else " "
        print(f"{marker} {device.address}  {name or '<no name>'}  {advertisement.service_uuids}")
    print("\n* = WalkingPad/KingSmith name match")


if __name__ == "__main__":
    asyncio.run(main())
