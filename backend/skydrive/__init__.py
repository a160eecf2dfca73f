"""SkyDrive file-management backend: uploads, trash and sharing."""
