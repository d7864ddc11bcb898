"""
Prompt templates for the six crew agents.

Each template is a plain function of earlier outputs; the orchestrator never
looks at the text.
"""

from collections.abc import Sequence

IDEA_FORMAT = """Format your response exactly as:
Title: [App Title]

Description: [One detailed paragraph describing the app, its target users, core features, and the problem it solves]"""


def excerpt(text: str, limit: int) -> str:
    """Leading ``limit`` characters of ``text``, marked when cut."""
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def idea_generation(previous_titles: Sequence[str] = ()) -> str:
    avoid = ""
    if previous_titles:
        listed = "\n".join(f"- {title}" for title in previous_titles)
        avoid = f"\nDo not repeat any of these previously generated ideas:\n{listed}\n"
    return f"""Generate a unique and marketable full-stack application idea that solves a real-world problem.
The idea should be innovative, technically feasible, and have clear business value.
{avoid}
{IDEA_FORMAT}

Make sure the idea is:
- Technically feasible to build
- Addresses a genuine pain point
- Has clear monetization potential
- Uses modern web technologies
"""


def app_requirements(idea: str) -> str:
    return f"""Based on the app idea "{idea}", create a comprehensive requirements document.

Structure your response with these sections:

# Project Overview
Brief summary of the application

# User Stories
- As a [user type], I want [functionality] so that [benefit]
- (Include 5-7 user stories)

# Functional Requirements
- Core features and functionality
- User authentication and authorization
- Data management requirements
- API requirements

# Non-Functional Requirements
- Performance expectations
- Security requirements
- Scalability considerations
- Browser compatibility

# Technical Stack Recommendations
- Frontend technologies
- Backend technologies
- Database requirements
- Third-party integrations

Use markdown formatting and be specific about requirements.
"""


def code_generation(idea: str, requirements: str, requirements_limit: int = 1000) -> str:
    return f"""Generate production-ready boilerplate code for the application: "{idea}"

Based on these requirements: {excerpt(requirements, requirements_limit)}

Provide complete, functional code for:

## Frontend (React Component)
A modern React functional component with hooks, responsive Tailwind CSS layout,
form handling and validation, and API integration.

## Backend (Node.js Express Server)
A REST API server with route handlers for the main functionality, input
validation and error handling, database integration and authentication middleware.

## Database Schema
SQL schema for the main entities.

Format each section in clearly labeled markdown code blocks with appropriate language tags.
"""


def code_review(code: str, code_limit: int = 2000) -> str:
    return f"""Review the following code for a full-stack application.

Code to review:
{excerpt(code, code_limit)}

Provide feedback as a structured review:

## Security Analysis
## Performance Issues
## Code Quality
## Best Practices
## Recommendations
- Priority fixes (High/Medium/Low)

Use markdown formatting and provide specific, actionable feedback.
"""


def deployment(idea: str) -> str:
    return f"""Create a comprehensive deployment strategy for the application: "{idea}"

Provide detailed deployment instructions for:

# Platform Selection
# Frontend Deployment (Vercel/Netlify)
# Backend Deployment (Railway/Render)
# Database Setup
# CI/CD Pipeline
# Monitoring & Maintenance
# Security Configuration

Use markdown formatting with clear step-by-step instructions.
"""


def testing(idea: str, code: str, code_limit: int = 1000) -> str:
    structure = excerpt(code, code_limit) if code else "Standard React/Express application"
    return f"""Generate a comprehensive testing strategy for the application: "{idea}"

Based on this code structure: {structure}

Create testing plans for:

# Testing Strategy Overview
# Unit Tests (Jest/Vitest)
# Integration Tests
# End-to-End Tests (Cypress/Playwright)
# Performance Testing
# Testing Configuration

Provide complete, runnable test examples with proper setup and configuration.
"""


def seeded_idea(initial_input: str) -> str:
    """Idea-stage output synthesized from a user-supplied idea."""
    return f"Title: {initial_input}\nDescription: {initial_input}"
