# NMDC protocol constants (wire literals and client defaults)

DELIMITER = "|"

DEFAULT_HUB_PORT = 411

# Lock/key special bytes, rendered as /%DCN###%/ on the wire.
KEY_ESCAPED_BYTES = frozenset({0, 5, 36, 96, 124, 126})

# Hub handshake lines
HUB_SUPPORTS = "$Supports NoGetINFO UserCommand UserIP2"
HUB_VERSION = "$Version 1,0091"
HUB_GET_NICK_LIST = "$GetNickList"

# Peer handshake lines
PEER_SUPPORTS = "$Supports MiniSlots XmlBZList ADCGet TTHL TTHF ZLIG"
PEER_DIRECTION = "$Direction Download 10100"
FILE_LIST_REQUEST = "$ADCGET file files.xml.bz2 0 -1 ZL1"

# The lock/key exchange works on raw bytes; latin-1 maps them 1:1.
PROTOCOL_BYTES_ENCODING = "latin-1"

RECONNECT_INTERVAL_S = 30.0
KEEPALIVE_IDLE_S = 15

# $UserCommand types
USERCOMMAND_TYPE_SEPARATOR = 0
USERCOMMAND_TYPE_RAW = 1
USERCOMMAND_TYPE_NICKLIMITED = 2
USERCOMMAND_TYPE_CLEARALL = 255

# $UserCommand context bitmask
USERCOMMAND_CONTEXT_HUB = 1
USERCOMMAND_CONTEXT_USER = 2
USERCOMMAND_CONTEXT_SEARCH = 4
USERCOMMAND_CONTEXT_FILELIST = 8
