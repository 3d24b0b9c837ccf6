# Image trust gateway backend
