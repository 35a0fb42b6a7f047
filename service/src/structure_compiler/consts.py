PRIMITIVE_NAMESPACE = "primitive"
UNKNOWN_NAMESPACE = "unknown"

PRIMITIVES = (
    "boolean",
    "integer",
    "string",
    "decimal",
    "uri",
    "base64Binary",
    "instant",
    "date",
    "dateTime",
    "time",
    "code",
    "oid",
    "id",
    "markdown",
    "unsignedInt",
    "positiveInt",
    "xhtml",
    "concept",
)

# FHIR type codes a primitive of the domain model can be placed on
PRIMITIVE_TYPE_CODES = {
    "concept": ("CodeableConcept", "Coding", "code"),
}

VALUE_SUPPORTED_TYPES = (
    "Coding",
    "CodeableConcept",
    "Attachment",
    "Identifier",
    "Quantity",
    "SampledData",
    "Range",
    "Period",
    "Ratio",
    "HumanName",
    "Address",
    "ContactPoint",
    "Timing",
    "Reference",
    "Annotation",
    "Signature",
)

EXTENSION_VALUE_TYPES = (
    "base64Binary",
    "boolean",
    "code",
    "date",
    "dateTime",
    "decimal",
    "id",
    "instant",
    "integer",
    "markdown",
    "oid",
    "positiveInt",
    "string",
    "time",
    "unsignedInt",
    "uri",
    "Address",
    "Age",
    "Annotation",
    "Attachment",
    "CodeableConcept",
    "Coding",
    "ContactPoint",
    "Count",
    "Distance",
    "Duration",
    "HumanName",
    "Identifier",
    "Money",
    "Period",
    "Quantity",
    "Range",
    "Ratio",
    "Reference",
    "SampledData",
    "Signature",
    "Timing",
    "Meta",
)

FHIR_BASE_URL = "http://hl7.org/fhir/StructureDefinition"
EXTENSION_BASE_DEFINITION = f"{FHIR_BASE_URL}/Extension"
ELEMENT_BASE_DEFINITION = f"{FHIR_BASE_URL}/Element"

ELEMENT_CONSTRAINTS = [
    {
        "key": "ele-1",
        "severity": "error",
        "human": "All FHIR elements must have a @value or children",
        "expression": "children().count() > id.count()",
        "xpath": "@value|f:*|h:div",
        "source": "Element",
    },
    {
        "key": "ext-1",
        "severity": "error",
        "human": "Must have either extensions or value[x], not both",
        "expression": "extension.exists() != value.exists()",
        "xpath": "exists(f:extension)!=exists(f:*[starts-with(local-name(.), 'value')])",
        "source": "Extension",
    },
]

EXTENSION_VALUE_SHORT = "Value of extension"
EXTENSION_VALUE_DEFINITION = (
    "Value of extension - may be a resource or one of a constrained set of the data types "
    "(see Extensibility in the FHIR base for list)."
)
EXTENSION_URL_SHORT = "identifies the meaning of the extension"
EXTENSION_URL_DEFINITION = "Source of the definition for the extension code - a logical name or a URL."
EXTENSION_URL_COMMENT = (
    "The definition may point directly to a computable or human-readable definition of the "
    "extensibility codes, or it may be a logical URI as declared in some other specification. "
    "The definition SHALL be a URI for the Structure Definition defining the extension."
)
ELEMENT_ID_SHORT = "xml:id (or equivalent in JSON)"
ELEMENT_ID_DEFINITION = (
    "unique id for the element within a resource (for internal references). "
    "This may be any string value that does not contain spaces."
)
RIM_MAPPING = [{"identity": "rim", "map": "N/A"}]

MODIFIER_REASON = "This extension modifies the meaning of the element it is applied to."

BASIC_CODE_SYSTEM = "{fhir_url}/CodeSystem/{shorthand}-basic-resource-type"
