from fastmcp import FastMCP

from app.tools.transactions import register_transaction_tools

# Initialize FastMCP server
mcp = FastMCP("guarded-signer")

# Register Tools
register_transaction_tools(mcp)

if __name__ == "__main__":
    mcp.run()
