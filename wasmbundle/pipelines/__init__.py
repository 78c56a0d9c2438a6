"""Asset pipelines driven by the data-trunk link elements of a source HTML page."""