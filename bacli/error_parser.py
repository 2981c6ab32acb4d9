# bacli/error_parser.py

def parse_tool_error(stderr: str, engine: str) -> str:
    """
    Parses the stderr output from a dump/restore command and returns a human-readable summary.
    """
    stderr = (stderr or "").lower()

    if "authentication failed" in stderr or "password authentication failed" in stderr:
        return "Authentication error: the leased credential was rejected (it may have expired)."

    if engine == "postgres":
        if "does not exist" in stderr and "database" in stderr:
            return "Database error: the specified database does not exist."
        if "connection refused" in stderr:
            return "Connection error: could not connect to the database server. Check host and port."
        if "could not translate host name" in stderr:
            return "Connection error: the host name could not be resolved."
        if "timeout expired" in stderr:
            return "Connection error: timed out while connecting to the server."
        if "permission denied" in stderr:
            return "Permission error: the user lacks the privileges needed for this operation."
        if "server version mismatch" in stderr:
            return "Version error: the client tool is older than the server."

    elif engine == "mongodb":
        if "could not connect to server" in stderr or "failed to connect" in stderr:
            return "Connection error: could not connect to the server. Check address, port and network."
        if "not authorized" in stderr:
            return "Permission error: the user is not authorized for this database."
        if "server selection error" in stderr:
            return "Connection error: no reachable server matched the connection settings."

    if "no such file or directory" in stderr or "not found" in stderr:
        return "Tool error: the backup tool or a referenced file could not be found."

    return "Unknown error: the operation failed for an unidentified reason. Check the full log for details."
