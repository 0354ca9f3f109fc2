"""
Archiver package. Incrementally copies Telegram group history into
PostgreSQL, resuming per container from a stored watermark.

Telegram access goes through ReadOnlyTelegramClient, which only lets
read methods through.  The database role can insert archive rows and
move watermarks, nothing else.
"""
