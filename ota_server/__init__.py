"""Local OTA firmware server and firmware release helpers."""
