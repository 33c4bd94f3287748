"""
MSSQL Restore Chain Resolver.

Rebuilds a valid Full/Differential/Log backup chain for a database from
scanned backup headers, proves its LSN continuity, and turns it into an
ordered restore plan that can be executed against SQL Server or rendered
as a T-SQL script.
"""

__version__ = "0.1.0"
