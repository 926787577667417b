"""Run the query-operator command line tool."""

from .tool.query_operator import main

if __name__ == "__main__":
    main()
