PERMISSION_READ = 1
PERMISSION_UPDATE = 2
PERMISSION_CREATE = 4
PERMISSION_WRITE = PERMISSION_UPDATE | PERMISSION_CREATE
PERMISSION_DELETE = 8
PERMISSION_SHARE = 16
PERMISSION_ALL = 31
# Group folder ACL management, not part of the file permission mask.
PERMISSION_ADVANCED = 128

# Host role permission name -> Nextcloud group folder permission bits.
GROUP_FOLDER_PERMISSIONS = {
    "nextcloud group folder read": PERMISSION_READ,
    "nextcloud group folder write": PERMISSION_WRITE,
    "nextcloud group folder delete": PERMISSION_DELETE,
    "nextcloud group folder share": PERMISSION_SHARE,
    "nextcloud group folder manage": PERMISSION_ADVANCED,
}

# OCS status codes.
OCS_USER_EXISTS = 102
OCS_GROUP_NOT_FOUND = 101
OCS_NOT_FOUND = 998
