"""kpiscore service layer."""
