"""
Constants used throughout the OData MCP hub library.
"""

# EDMX / EDM namespaces, used for dialect detection
EDMX_V2_NAMESPACE = 'http://schemas.microsoft.com/ado/2007/06/edmx'
EDMX_V3_NAMESPACE = 'http://schemas.microsoft.com/ado/2009/11/edmx'
EDMX_V4_NAMESPACE = 'http://docs.oasis-open.org/odata/ns/edmx'
EDM_V4_NAMESPACE_LEGACY = 'http://schemas.microsoft.com/ado/2006/04/edm'

# Vendor namespaces carrying attributes the parser reads
SAP_NAMESPACE = 'http://www.sap.com/Protocols/SAPData'
METADATA_NAMESPACE = 'http://schemas.microsoft.com/ado/2007/08/dataservices/metadata'

# Primitive Edm type groups for JSON-Schema mapping
EDM_INTEGER_TYPES = frozenset({
    "Edm.Int16", "Edm.Int32", "Edm.Int64", "Edm.Byte", "Edm.SByte",
})
EDM_NUMBER_TYPES = frozenset({"Edm.Single", "Edm.Double", "Edm.Decimal"})

# Path segments that never make a useful service identifier
NOISE_PATH_SEGMENTS = frozenset({'api', 'odata', 'sap', 'opu'})
FALLBACK_SERVICE_ID = 'od'
MAX_SERVICE_ID_LENGTH = 8

DEFAULT_MAX_TOOL_NAME_LENGTH = 64

# Only these operation names have a short form
SHORT_OPERATION_NAMES = {
    'update': 'upd',
    'delete': 'del',
}

# Operation letters accepted by --enable/--disable and ODATA_ENABLED_OPS
ALL_OPERATION_LETTERS = "CRUDFSGA"
READ_OPERATION_LETTERS = "SFG"

# Query options in the order they are appended to a request
QUERY_OPTION_ORDER = (
    'select', 'filter', 'orderby', 'top', 'skip', 'expand', 'count', 'search', 'format',
)
QUERY_FORMATS = ('json', 'xml')

# OData v4 capability vocabulary terms mapped to entity set flags
CAPABILITY_TERMS = {
    'InsertRestrictions': ('creatable', 'Insertable'),
    'UpdateRestrictions': ('updatable', 'Updatable'),
    'DeleteRestrictions': ('deletable', 'Deletable'),
    'SearchRestrictions': ('searchable', 'Searchable'),
    'CountRestrictions': ('countable', 'Countable'),
}

# SAP backend catalog used for service discovery
SAP_CATALOG_PATH = '/sap/bc/rest/backends/catalog/services'

USER_AGENT = 'OData-MCP-Hub/1.0'
OAUTH_EXPIRY_BUFFER_SECONDS = 60
DEFAULT_TIMEOUT_MS = 30000
