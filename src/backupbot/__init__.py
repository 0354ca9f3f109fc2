"""
Backup bot package: the Telegram Bot API front end that lets a group
trigger an archive run with a chat message and reports the result.
"""
