"""Well-known field IDs, status values and request flags.

Core field IDs are negative so they can never collide with fields
registered by plugins.
"""

# --------------------------------------------------------------------------- #
# Field IDs                                                                   #
# --------------------------------------------------------------------------- #

FIELD_TITLE = -1
FIELD_DESCRIPTION = -2
FIELD_PROJECT = -3
FIELD_KEYWORDS = -4
FIELD_CATEGORY = -5
FIELD_PRIORITY = -7
FIELD_STATUS = -9
FIELD_UIDASSIGN = -12
FIELD_COMMENT = -14  # changelog only; value_1 points at the ticket_texts row
FIELD_OLDCOMMENT = -15  # superseded comment text, kept for history
FIELD_CHILDREN = -33  # companion of FIELD_PARENTS, always PARENTS + 1
FIELD_PARENTS = -34
FIELD_LASTMOD_DT = -95
FIELD_CREATED_DT = -96
FIELD_IGNORE = -99

# Pseudo-fields used for changelog entries only.
FIELD_TICKET_CREATED = -200
# value_1 = old text row, value_2 = new text row, value_str = original author
FIELD_COMMENT_UPDATED = -205
# value_1 = retracted text row
FIELD_COMMENT_DELETED = -206

# --------------------------------------------------------------------------- #
# Status values                                                               #
# --------------------------------------------------------------------------- #

STATUS_OPEN = -1
STATUS_CLOSED = -3
STATUS_NEW = -4
STATUS_CONFIRMED = -7
STATUS_RESOLVED = -9
STATUS_REOPENED = -11
STATUS_IN_PROGRESS = -13

# --------------------------------------------------------------------------- #
# Create/update flags                                                         #
# --------------------------------------------------------------------------- #

CREATEFL_NOCHANGELOG = 0x01
CREATEFL_IGNOREMISSING = 0x02

# Storage tables whose empty-string input means NULL.
NUMERIC_TABLES = ("ticket_ints", "ticket_floats", "ticket_amounts")
